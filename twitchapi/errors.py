"""
Erreurs typées de l'API Helix.

Every failure of a Helix call surfaces as one of these, so callers branch
on the class instead of on raw status codes.
"""
from typing import Optional


class HelixError(Exception):
    """Base class: a Helix call failed with a non-recoverable status."""

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class TransientError(HelixError):
    """Network error, timeout, 429 or 5xx."""


class UnauthorizedError(TransientError):
    """401 that survived one credential refresh (handled as transient)."""


class ConflictError(HelixError):
    """409, the subscription already exists on Twitch."""


class NotFoundError(HelixError):
    """404, or an empty lookup for a specific id."""


class AuthError(Exception):
    """The OAuth endpoint refused every grant we know how to request."""


def error_for_status(status: int, message: str, body: str = "") -> HelixError:
    if status == 401:
        return UnauthorizedError(message, status, body)
    if status == 404:
        return NotFoundError(message, status, body)
    if status == 409:
        return ConflictError(message, status, body)
    if status == 429 or status >= 500:
        return TransientError(message, status, body)
    return HelixError(message, status, body)
