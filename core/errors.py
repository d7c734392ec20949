"""Typed failures raised by the storage, vault and Drive layers."""
from __future__ import annotations

from typing import Optional


class SyncError(Exception):
    """Base class for everything the sync subsystem raises."""

    kind = "error"


class AuthExpiredError(SyncError):
    """The Drive credential was rejected (401/403); a new authorization is required."""

    kind = "auth-expired"


class TransientError(SyncError):
    """Network failure or 5xx after retries were exhausted."""

    kind = "transient"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class MalformedBackupError(SyncError):
    """Drive answered 2xx but the body is not a usable backup."""

    kind = "malformed"


class IntegrityMismatchError(SyncError):
    """A downloaded backup does not match its own checksum."""

    kind = "integrity"


class RemoteError(SyncError):
    """Any other non-2xx answer from Drive."""

    kind = "remote"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TokenUnreadableError(SyncError):
    """The stored credential could not be decrypted with this device's secret."""

    kind = "token-unreadable"


class SyncInitializationError(SyncError):
    """The local sync state could not be read at startup."""

    kind = "init"


class AuthorizationError(SyncError):
    kind = "authorization"


class AuthorizationCancelledError(AuthorizationError):
    """The user closed or denied the consent screen."""

    kind = "authorization-cancelled"


__all__ = [
    "SyncError",
    "AuthExpiredError",
    "TransientError",
    "MalformedBackupError",
    "IntegrityMismatchError",
    "RemoteError",
    "TokenUnreadableError",
    "SyncInitializationError",
    "AuthorizationError",
    "AuthorizationCancelledError",
]
