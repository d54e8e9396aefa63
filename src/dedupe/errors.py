"""Error types raised by the dedupe services."""

from typing import Optional


class DedupeError(Exception):
    """Base class for dedupe failures."""


class ValidationError(DedupeError):
    """Malformed input: bad scan parameters, missing or mismatched ids."""


class NotFoundError(DedupeError):
    """A tenant, candidate or product does not exist (or belongs to another tenant)."""


class ConflictError(DedupeError):
    """The target is no longer in a state that accepts the operation."""


class ScanError(DedupeError):
    """A scan could not be started."""


class MergeError(DedupeError):
    """
    A merge saga step failed.

    Carries the failing step, the records rewritten so far and the merge key,
    so the caller can retry the same merge safely.
    """

    def __init__(
        self,
        message: str,
        step: str,
        records_affected: int = 0,
        merge_key: Optional[str] = None,
    ):
        super().__init__(message)
        self.step = step
        self.records_affected = records_affected
        self.merge_key = merge_key

    def to_dict(self) -> dict:
        return {
            "detail": str(self),
            "step": self.step,
            "records_affected": self.records_affected,
            "merge_key": self.merge_key,
        }
