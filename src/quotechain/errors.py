"""Exceptions raised by quotechain."""

from __future__ import annotations


class ChainError(Exception):
    """Base class for chain failures."""

    def __init__(self, message: str, *, item_id: str | None = None, run_id: str | None = None):
        super().__init__(message)
        self.item_id = item_id
        self.run_id = run_id


class InvalidArgument(ChainError, ValueError):
    """Malformed submission: None, not a sequence, or too many items."""


class ReadFailure(ChainError):
    """The reader could not fetch an item's payload."""


class CalculateSubmissionFailure(ChainError):
    """The calculator rejected the request."""


class SaveFailure(ChainError):
    """The saver could not persist a result. The popped item is lost."""


class CallbackTimeout(ChainError):
    """The calculator never called back."""


class StaleContinuation(ChainError):
    """A callback arrived for a cycle that is no longer in flight."""


class ChainAborted(ChainError):
    """The run was aborted by the operator."""
