"""
chat/ - destinations des notifications

- base.py : interface ChatTarget (send / edit / delete)
- discord_target.py : implémentation discord.py
"""

from chat.base import ChatError, ChatPayload, ChatTarget, MessageGone

__all__ = ["ChatError", "ChatPayload", "ChatTarget", "MessageGone"]
