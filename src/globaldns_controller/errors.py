"""Error types raised by the resource store and the reconcile pass."""

from __future__ import annotations

# =============================================================================
# Store Errors
# =============================================================================


class StoreError(Exception):
    """A resource store call failed (transport error or unexpected response)."""


class NotFoundError(StoreError):
    pass


class AlreadyExistsError(StoreError):
    pass


class ConflictError(StoreError):
    """The stored object's resource version moved since it was read."""


class ForbiddenError(StoreError):
    pass


# =============================================================================
# Sync Errors
# =============================================================================


class SyncError(Exception):
    """A reconcile pass aborted.

    ``retryable`` tells the dispatcher whether requeueing with backoff can
    help, or whether the object must change before a pass can succeed.
    """

    retryable = True

    def __init__(self, message: str, *, key: str = ""):
        super().__init__(message)
        self.key = key


class MissingMetadataError(SyncError):
    retryable = False


class LookupFailedError(SyncError):
    pass


class ProjectionFailedError(SyncError):
    pass


class StatusUpdateFailedError(SyncError):
    pass


class AuthorizationDeniedError(SyncError):
    retryable = False

    def __init__(self, message: str, *, key: str = "", group: str = "", project: str = ""):
        super().__init__(message, key=key)
        self.group = group
        self.project = project


class AccessProvisioningError(SyncError):
    pass


class MembershipUpdateFailedError(SyncError):
    pass


class StoreConflictError(SyncError):
    """A write lost an optimistic-concurrency race; the next pass re-reads."""
