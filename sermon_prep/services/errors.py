"""Exception hierarchy shared by repositories, the sync engine and the web layer."""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Tuple


class SeriesError(Exception):
    """Base class for every domain error raised by the service layer."""


class ValidationError(SeriesError):
    """Input rejected before any write was attempted."""


class NotFoundError(SeriesError):
    """A referenced document does not exist."""

    kind = "Document"

    def __init__(self, identifier: str, message: Optional[str] = None) -> None:
        self.identifier = identifier
        super().__init__(message or f"{self.kind} {identifier} not found")


class SeriesNotFoundError(NotFoundError):
    kind = "Series"


class SermonNotFoundError(NotFoundError):
    kind = "Sermon"


class GroupNotFoundError(NotFoundError):
    kind = "Group"


class DocumentNotFoundError(NotFoundError):
    def __init__(self, collection: str, identifier: str) -> None:
        self.collection = collection
        super().__init__(identifier, f"Document {collection}/{identifier} not found")


class ConcurrentModificationError(SeriesError):
    """A compare-and-set write lost against another writer."""

    def __init__(self, collection: str, identifier: str, expected: int, actual: int) -> None:
        self.collection = collection
        self.identifier = identifier
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"{collection}/{identifier} changed concurrently "
            f"(expected version {expected}, found {actual})"
        )


class MembershipConflictError(SeriesError):
    """The entity already belongs to a different series."""

    def __init__(self, member: Any, current_series_id: str) -> None:
        self.member = member
        self.current_series_id = current_series_id
        super().__init__(f"{member} already belongs to series {current_series_id}")


class BatchLimitExceededError(SeriesError):
    """A batch carried more operations than a single commit accepts."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(f"Batch of {size} operations exceeds the limit of {limit}")


class SeriesSyncError(SeriesError):
    """One or more back-reference writes failed during a fan-out.

    Writes that succeeded are kept; re-running the sync converges.
    """

    def __init__(self, series_id: str, failures: Sequence[Tuple[Any, BaseException]]) -> None:
        self.series_id = series_id
        self.failures: List[Tuple[Any, BaseException]] = list(failures)
        summary = "; ".join(f"{member}: {error}" for member, error in self.failures[:5])
        more = len(self.failures) - 5
        if more > 0:
            summary += f"; and {more} more"
        super().__init__(
            f"Failed to sync {len(self.failures)} member(s) of series {series_id}: {summary}"
        )


class CascadeError(SeriesError):
    """A chunk of a cascading delete failed to commit."""

    def __init__(self, series_id: str, committed_batches: int, cause: BaseException) -> None:
        self.series_id = series_id
        self.committed_batches = committed_batches
        self.cause = cause
        super().__init__(
            f"Cascade for series {series_id} stopped after {committed_batches} "
            f"committed batch(es): {cause}"
        )


__all__ = [
    "BatchLimitExceededError",
    "CascadeError",
    "ConcurrentModificationError",
    "DocumentNotFoundError",
    "GroupNotFoundError",
    "MembershipConflictError",
    "NotFoundError",
    "SeriesError",
    "SeriesNotFoundError",
    "SeriesSyncError",
    "SermonNotFoundError",
    "ValidationError",
]
