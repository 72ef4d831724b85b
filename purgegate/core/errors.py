from __future__ import annotations

from typing import Iterable


class PurgeGateError(Exception):
    """Base error for PurgeGate."""


class NotFoundError(PurgeGateError):
    """Deletion job or account does not exist."""


class PermissionDenied(PurgeGateError):
    """Actor is neither the account owner nor a force-delete holder."""


class AccountProtectedError(PermissionDenied):
    """Account is on the protected list and can never be deleted."""


class ConflictError(PurgeGateError):
    """A non-terminal job already exists or the job moved on concurrently."""


class LockUnavailableError(ConflictError):
    """Per-account lock could not be acquired within the wait budget."""


class PreconditionFailed(PurgeGateError):
    """One or more gates for the requested transition are unmet."""

    def __init__(self, unmet_gates: Iterable[str], message: str | None = None) -> None:
        self.unmet_gates = list(unmet_gates)
        super().__init__(message or "Unmet deletion gates: " + ", ".join(self.unmet_gates))


class AuthenticationFailed(PurgeGateError):
    """Re-authentication secret did not verify."""


class SnapshotFailed(PurgeGateError):
    """Snapshot coordinator reported a failure."""


class CleanupFailed(PurgeGateError):
    """A cleanup phase reported a failure."""

    def __init__(self, message: str, *, transient: bool = True) -> None:
        self.transient = transient
        super().__init__(message)


class SnapshotTokenError(PurgeGateError):
    """Snapshot link token is malformed or has a bad signature."""


class SnapshotTokenExpired(SnapshotTokenError):
    """Snapshot link token is past its expiry."""


class DatabaseError(PurgeGateError):
    """Database layer failure."""
