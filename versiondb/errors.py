"""
Error types for versiondb.

This module defines all exception types raised by the store and engine:
- VersionDbError: Base exception
- NotFoundError: Expire requested on a missing or already expired version
- ConflictError: Insert requested while a current version exists
- StoreUnavailableError: Backing store cannot be reached or committed
- OutOfOrderError: Changed snapshot predates the current version
- InvalidSnapshotError: Empty business key or attributes that are not JSON values
- ApplyError: Upsert failed for one business key

Invariants:
    - All errors inherit from VersionDbError
    - Errors include context for debugging (keys, attempted decision)
    - Only StoreUnavailableError is retryable on its own
"""

from __future__ import annotations

from typing import Any


class VersionDbError(Exception):
    """Base exception for all versiondb errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "VERSIONDB_ERROR"
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        """Whether retrying the same call may succeed."""
        return False


class NotFoundError(VersionDbError):
    """Version to expire does not exist or is already expired.

    Signals a logic error or a race upstream, never a user error.
    """

    def __init__(self, message: str, surrogate_key: int) -> None:
        super().__init__(
            message,
            code="NOT_FOUND",
            details={"surrogate_key": surrogate_key},
        )
        self.surrogate_key = surrogate_key


class ConflictError(VersionDbError):
    """A current version already exists for the business key.

    Raised when:
    - The expire step was skipped before inserting
    - Two writers raced on the same business key
    """

    def __init__(self, message: str, business_key: str) -> None:
        super().__init__(
            message,
            code="CONFLICT",
            details={"business_key": business_key},
        )
        self.business_key = business_key


class StoreUnavailableError(VersionDbError):
    """The backing store cannot be reached or the commit failed."""

    def __init__(self, message: str, backend: str | None = None) -> None:
        super().__init__(
            message,
            code="STORE_UNAVAILABLE",
            details={"backend": backend},
        )
        self.backend = backend

    @property
    def retryable(self) -> bool:
        return True


class OutOfOrderError(VersionDbError):
    """Changed snapshot is older than the current version.

    Superseding it would give the new version an effective time before
    the one it replaces and break the timeline.
    """

    def __init__(self, message: str, business_key: str, effective_at: int, observed_at: int) -> None:
        super().__init__(
            message,
            code="OUT_OF_ORDER",
            details={
                "business_key": business_key,
                "effective_at": effective_at,
                "observed_at": observed_at,
            },
        )
        self.business_key = business_key
        self.effective_at = effective_at
        self.observed_at = observed_at


class InvalidSnapshotError(VersionDbError):
    """Snapshot cannot be stored as given.

    Raised for an empty business key, or attribute values that do not
    survive a JSON round trip (dates, Decimal, NaN). Never retryable.
    """

    def __init__(self, message: str, business_key: str) -> None:
        super().__init__(
            message,
            code="INVALID_SNAPSHOT",
            details={"business_key": business_key},
        )
        self.business_key = business_key


class ApplyError(VersionDbError):
    """Applying a snapshot failed.

    The underlying error is chained as ``__cause__``.

    Attributes:
        business_key: Key of the snapshot being applied
        attempted: Decision the engine was carrying out ("inserted", "superseded")
    """

    def __init__(
        self,
        message: str,
        business_key: str,
        attempted: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code="APPLY_ERROR",
            details={"business_key": business_key, "attempted": attempted},
        )
        self.business_key = business_key
        self.attempted = attempted

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    @property
    def retryable(self) -> bool:
        """Retrying helps after an outage or a lost race on the same key."""
        cause = self.__cause__
        if isinstance(cause, ConflictError):
            return True
        return isinstance(cause, VersionDbError) and cause.retryable
