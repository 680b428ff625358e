"""
Core - logique du relay (follows, subscriptions, clips, livraisons)
"""

# Import explicites pour Pylance
from core.keyed_lock import KeyedLock
from core.dispatch_queue import DispatchQueue
from core.delivery_tracker import DeliveryTracker

__all__ = ["KeyedLock", "DispatchQueue", "DeliveryTracker"]
