from __future__ import annotations


class SyncError(RuntimeError):
    """Unrecoverable failure of one sync round. Local state stays untouched."""


class AuthError(SyncError):
    """Missing or expired credentials; the user has to reconnect."""


class NetworkError(SyncError):
    """Transient remote failure; retried on the next trigger."""
