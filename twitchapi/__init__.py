"""
twitchapi/
==========

Module dédié à la gestion de l'API Twitch.

Organisation:
- auth_manager.py : credential applicatif (chargement, refresh, persistance)
- helix_client.py : Helix + subscriptions EventSub webhook
- errors.py : erreurs typées (unauthorized, conflict, not-found, transient)
"""

from twitchapi.auth_manager import AuthManager
from twitchapi.errors import (
    AuthError,
    ConflictError,
    HelixError,
    NotFoundError,
    TransientError,
    UnauthorizedError,
)
from twitchapi.helix_client import HelixClient

__all__ = [
    "AuthManager",
    "HelixClient",
    "AuthError",
    "ConflictError",
    "HelixError",
    "NotFoundError",
    "TransientError",
    "UnauthorizedError",
]
