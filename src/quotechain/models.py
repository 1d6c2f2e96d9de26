"""Core data models for quotechain."""

from __future__ import annotations

import asyncio
import concurrent.futures
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from quotechain.chain import Chain


class ChainState(str, Enum):
    """Possible states of a chain run."""

    IDLE = "idle"
    QUEUE_LOADED = "queue_loaded"
    DISPATCHING = "dispatching"
    AWAITING_CALLBACK = "awaiting_callback"
    SAVING = "saving"
    FAILED = "failed"


# Legal moves of the run state machine. FAILED is left only by a new submission.
TRANSITIONS: dict[ChainState, frozenset[ChainState]] = {
    ChainState.IDLE: frozenset({ChainState.QUEUE_LOADED}),
    ChainState.QUEUE_LOADED: frozenset({ChainState.DISPATCHING, ChainState.FAILED}),
    ChainState.DISPATCHING: frozenset(
        {ChainState.AWAITING_CALLBACK, ChainState.DISPATCHING, ChainState.IDLE, ChainState.FAILED}
    ),
    ChainState.AWAITING_CALLBACK: frozenset({ChainState.SAVING, ChainState.DISPATCHING, ChainState.FAILED}),
    ChainState.SAVING: frozenset({ChainState.DISPATCHING, ChainState.FAILED}),
    ChainState.FAILED: frozenset({ChainState.QUEUE_LOADED}),
}


class FailurePolicy(str, Enum):
    """What to do with the rest of the chain when one item fails."""

    ABORT = "abort"
    CONTINUE = "continue"


@dataclass(frozen=True)
class WorkQueue:
    """The persisted remainder of a run."""

    key: str
    run_id: str
    items: tuple[str, ...] = ()

    @property
    def remaining(self) -> int:
        return len(self.items)

    def pop(self) -> tuple[str, WorkQueue]:
        """Return the head identifier and the queue without it."""
        if not self.items:
            raise IndexError("pop from empty work queue")
        return self.items[0], replace(self, items=self.items[1:])


@dataclass
class WorkItem:
    """One materialized item: its id and the payload read at dispatch time."""

    id: str
    payload: Any = None


@dataclass(frozen=True)
class Continuation:
    """
    Where the calculate worker reports back to.

    Handed to the calculator instead of the chain itself. Holds just enough
    to route the result to the right dispatch cycle.
    """

    run_id: str
    item_id: str
    token: str
    chain: Chain = field(repr=False, compare=False)
    loop: asyncio.AbstractEventLoop = field(repr=False, compare=False)

    async def resume(self, result: Any) -> None:
        """Deliver the result from inside the event loop. Save errors propagate."""
        await self.chain.on_calculate_complete(self, result)

    def complete(self, result: Any) -> concurrent.futures.Future:
        """
        Deliver the result from any thread.

        Returns a concurrent future that resolves once the result has been
        saved, or carries the save error.
        """
        return asyncio.run_coroutine_threadsafe(self.resume(result), self.loop)


@dataclass
class DispatchState:
    """What the chain holds across one dispatch -> callback cycle."""

    continuation: Continuation
    item: WorkItem
    dispatched_at: float = 0.0
    report: RunReport | None = field(default=None, repr=False)
    timeout_handle: asyncio.TimerHandle | None = field(default=None, repr=False)


@dataclass
class RunReport:
    """Outcome of one submission."""

    run_id: str
    submitted: int = 0
    saved: list[str] = field(default_factory=list)
    failed: list[tuple[str, BaseException]] = field(default_factory=list)
    state: ChainState = ChainState.QUEUE_LOADED
    error: BaseException | None = None
    started_at: float = field(default_factory=time.time)
    finished_at: float | None = None
    superseded_by: str | None = None
    _done: asyncio.Event = field(default_factory=asyncio.Event, repr=False, compare=False)

    @property
    def done(self) -> bool:
        return self.finished_at is not None

    @property
    def duration(self) -> float:
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at
