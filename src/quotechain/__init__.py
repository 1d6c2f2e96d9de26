"""quotechain - Serial job chains over an asynchronous calculate service."""

from quotechain.chain import MAX_ITEMS, Chain
from quotechain.errors import (
    CalculateSubmissionFailure,
    CallbackTimeout,
    ChainAborted,
    ChainError,
    InvalidArgument,
    ReadFailure,
    SaveFailure,
    StaleContinuation,
)
from quotechain.models import ChainState, Continuation, FailurePolicy, RunReport, WorkItem, WorkQueue
from quotechain.store import MemoryQueueStore, QueueStore, SqliteQueueStore

__version__ = "0.1.0"
__all__ = [
    "Chain",
    "MAX_ITEMS",
    "ChainState",
    "Continuation",
    "FailurePolicy",
    "RunReport",
    "WorkItem",
    "WorkQueue",
    "QueueStore",
    "MemoryQueueStore",
    "SqliteQueueStore",
    "ChainError",
    "InvalidArgument",
    "ReadFailure",
    "CalculateSubmissionFailure",
    "SaveFailure",
    "CallbackTimeout",
    "StaleContinuation",
    "ChainAborted",
]
