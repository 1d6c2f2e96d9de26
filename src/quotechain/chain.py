"""Core Chain scheduler class."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections.abc import Sequence
from typing import Any, Callable

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
from quotechain.models import (
    TRANSITIONS,
    ChainState,
    Continuation,
    DispatchState,
    FailurePolicy,
    RunReport,
    WorkItem,
    WorkQueue,
)
from quotechain.store import MemoryQueueStore, QueueStore

logger = logging.getLogger(__name__)

MAX_ITEMS = 7000

_ACTIVE_STATES = (
    ChainState.QUEUE_LOADED,
    ChainState.DISPATCHING,
    ChainState.AWAITING_CALLBACK,
    ChainState.SAVING,
)


class Chain:
    """
    Serial scheduler for work that is calculated by an asynchronous worker.

    Each item is read, handed to the calculator together with a
    continuation, and saved when the calculator calls back. The next item is
    only read after the previous result has been saved, so the calculator
    never sees more than one item at a time.

    Example:
        chain = quotechain.Chain("quotes")

        @chain.reader
        def read(quote_id):
            return crm.fetch_quote(quote_id)

        @chain.calculator
        def calculate(quote, continuation):
            pricing.calculate_async(quote, on_done=continuation.complete)

        @chain.saver
        def save(result):
            crm.save_quote(result)

        await chain.submit(["Q-1", "Q-2", "Q-3"])
        report = await chain.join()
    """

    def __init__(
        self,
        name: str = "default",
        *,
        store: QueueStore | None = None,
        max_items: int = MAX_ITEMS,
        failure_policy: FailurePolicy | str = FailurePolicy.ABORT,
        callback_timeout: float | None = None,
    ) -> None:
        """
        Args:
            name: Key of this chain's queue record in the store.
            store: Where the remaining queue is persisted. Defaults to memory.
            max_items: Largest accepted submission.
            failure_policy: "abort" stops the run on the first failure,
                "continue" records the failed item and moves on.
            callback_timeout: Seconds to wait for the calculator to call back.
                None waits forever. With the continue policy a timed-out item
                is skipped while the calculator may still be working on it,
                so the next item can overlap it.
        """
        if max_items < 0:
            raise ValueError(f"max_items must be >= 0, got {max_items}")
        if callback_timeout is not None and callback_timeout <= 0:
            raise ValueError(f"callback_timeout must be positive, got {callback_timeout}")

        self.name = name
        self.store = store if store is not None else MemoryQueueStore()
        self.max_items = max_items
        self.failure_policy = FailurePolicy(failure_policy)
        self.callback_timeout = callback_timeout

        # Collaborators
        self._reader: Callable | None = None
        self._calculator: Callable | None = None
        self._saver: Callable | None = None

        # Event callbacks
        self._on_dispatch_callback: Callable | None = None
        self._on_save_callback: Callable | None = None
        self._on_failure_callback: Callable | None = None
        self._on_complete_callback: Callable | None = None

        # Run state
        self._state = ChainState.IDLE
        self._report: RunReport | None = None
        self._dispatch: DispatchState | None = None
        self._active = False  # a batch unit is scheduled or a cycle is in flight
        self._lock = asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    # --- Collaborator Registration ---

    def reader(self, func):
        """
        Decorator to register the read operation.

        Called with an item id, returns the item's payload.

        Example:
            @chain.reader
            async def read(quote_id):
                return await crm.get_quote(quote_id)
        """
        self._reader = func
        return func

    def calculator(self, func):
        """
        Decorator to register the calculate operation.

        Called with (payload, continuation). Must return once the work has been
        submitted, and later report the result through
        `continuation.complete(result)` (any thread) or
        `await continuation.resume(result)` (event loop).
        """
        self._calculator = func
        return func

    def saver(self, func):
        """
        Decorator to register the save operation.

        Called with the result passed to the continuation.
        """
        self._saver = func
        return func

    # --- Event Callbacks ---

    def on_dispatch(self, func):
        """Decorator to register a callback called with (item) when calculate is submitted."""
        self._on_dispatch_callback = func
        return func

    def on_save(self, func):
        """Decorator to register a callback called with (item, result) after a save."""
        self._on_save_callback = func
        return func

    def on_failure(self, func):
        """
        Decorator to register failure callback.

        Called with (item_id, error). item_id is None when the failure is not
        tied to one item.
        """
        self._on_failure_callback = func
        return func

    def on_complete(self, func):
        """Decorator to register a callback called with (report) when a run finishes."""
        self._on_complete_callback = func
        return func

    # --- Introspection ---

    @property
    def state(self) -> ChainState:
        return self._state

    @property
    def report(self) -> RunReport | None:
        """Report of the most recent submission."""
        return self._report

    @property
    def in_flight(self) -> str | None:
        """Id of the item between dispatch and save, if any."""
        if self._dispatch is None:
            return None
        return self._dispatch.item.id

    async def remaining(self) -> list[str]:
        """Ids still waiting in the persisted queue."""
        queue = await self.store.load(self.name)
        return list(queue.items) if queue else []

    # --- Submission ---

    async def submit(self, items: Sequence[str]) -> str:
        """
        Replace the queue with `items` and start working through it.

        A previous run's queue is discarded, not merged. If an item of the
        previous run is still being calculated, its callback continues with
        the new queue.

        Returns:
            The new run id.

        Raises:
            InvalidArgument: items is None, not a sequence, or too long.
            ChainError: reader, calculator or saver not registered.
        """
        if items is None:
            raise InvalidArgument("items must not be None")
        if isinstance(items, (str, bytes)) or not isinstance(items, Sequence):
            raise InvalidArgument(f"items must be a sequence of ids, got {type(items).__name__}")
        if len(items) > self.max_items:
            raise InvalidArgument(f"Too many items: {len(items)} (max {self.max_items})")
        self._check_collaborators()

        run_id = uuid.uuid4().hex[:12]
        async with self._lock:
            await self.store.replace(WorkQueue(key=self.name, run_id=run_id, items=tuple(items)))

            previous = self._report
            if previous is not None and not previous.done:
                logger.info("Run %s superseded by %s", previous.run_id, run_id)
                previous.superseded_by = run_id
                previous.state = ChainState.IDLE
                self._finish_report(previous)

            self._report = RunReport(run_id=run_id, submitted=len(items))
            logger.info("Run %s submitted with %d items", run_id, len(items))

            if not self._active:
                self._transition(ChainState.QUEUE_LOADED)
                self._active = True
                self._schedule_batch()

        return run_id

    async def join(self, timeout: float | None = None) -> RunReport:
        """
        Wait for the current run to finish.

        Raises:
            ChainError: The run was aborted; the error that aborted it.
            asyncio.TimeoutError: timeout elapsed first.
        """
        report = self._report
        if report is None:
            raise ChainError("Nothing has been submitted")

        if timeout is not None:
            await asyncio.wait_for(report._done.wait(), timeout)
        else:
            await report._done.wait()

        if report.error is not None:
            raise report.error
        return report

    async def abort(self, reason: str = "aborted") -> bool:
        """
        Stop the current run. The remaining queue stays in the store.

        Returns:
            True if a run was aborted, False if the chain was idle.
        """
        if not self._active:
            return False

        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is not current:
                task.cancel()

        report = self._report
        error = ChainAborted(reason, run_id=report.run_id if report else None)
        item_id = self.in_flight
        self._abort_run(error, item_id)
        return True

    async def close(self) -> None:
        """Cancel scheduled work and release the store."""
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        if self._active:
            report = self._report
            error = ChainAborted("chain closed", run_id=report.run_id if report else None)
            self._abort_run(error, self.in_flight)

        await self.store.close()

    # --- Phases ---

    async def dispatch_next(self) -> list[str]:
        """
        Pop the head of the persisted queue.

        The shorter queue is persisted before returning.

        Returns:
            [item_id], or [] when the queue is empty.
        """
        async with self._lock:
            return await self._pop()

    async def process_one(self, item_id: str) -> None:
        """
        Read one item and submit it to the calculator.

        Returns once calculate has been submitted; the cycle ends in
        on_calculate_complete.

        Raises:
            ChainError: no run is dispatching, so there is no cycle to start.
            ReadFailure, CalculateSubmissionFailure: under the abort policy.
        """
        if not self._active or self._state is not ChainState.DISPATCHING:
            raise ChainError(
                f"Cannot process {item_id!r}: chain is {self._state.value}, not dispatching"
            )

        report = self._report
        run_id = report.run_id if report else None
        loop = asyncio.get_running_loop()

        try:
            payload = await self._call(self._reader, item_id)
        except Exception as e:
            error = ReadFailure(f"Read failed for {item_id!r}: {e}", item_id=item_id, run_id=run_id)
            error.__cause__ = e
            self._handle_failure(error, item_id, report)
            if self._should_raise(report):
                raise error from e
            return

        continuation = Continuation(
            run_id=run_id,
            item_id=item_id,
            token=uuid.uuid4().hex,
            chain=self,
            loop=loop,
        )
        dispatch = DispatchState(
            continuation=continuation,
            item=WorkItem(id=item_id, payload=payload),
            dispatched_at=time.time(),
            report=report,
        )
        self._dispatch = dispatch
        self._transition(ChainState.AWAITING_CALLBACK)

        if self.callback_timeout is not None:
            dispatch.timeout_handle = loop.call_later(
                self.callback_timeout, self._on_callback_timeout, continuation.token
            )

        logger.debug("Dispatching %s (run %s)", item_id, run_id)
        self._emit(self._on_dispatch_callback, dispatch.item)

        try:
            await self._call(self._calculator, payload, continuation)
        except Exception as e:
            error = CalculateSubmissionFailure(
                f"Calculate rejected {item_id!r}: {e}", item_id=item_id, run_id=run_id
            )
            error.__cause__ = e
            if not self._is_current(continuation):
                # Calculator called back before raising; the cycle is already over.
                raise error from e
            self._handle_failure(error, item_id, report)
            if self._should_raise(report):
                raise error from e

    async def on_calculate_complete(self, continuation: Continuation, result: Any) -> None:
        """
        Callback target for the calculator.

        Saves the result, then schedules the next dispatch.

        Raises:
            StaleContinuation: the cycle is no longer in flight.
            SaveFailure: under the abort policy.
        """
        if not self._is_current(continuation) or self._state is not ChainState.AWAITING_CALLBACK:
            raise StaleContinuation(
                f"No dispatch in flight for {continuation.item_id!r} (token {continuation.token[:8]})",
                item_id=continuation.item_id,
                run_id=continuation.run_id,
            )

        dispatch = self._dispatch
        report = dispatch.report
        item_id = dispatch.item.id
        self._cancel_timeout(dispatch)
        self._transition(ChainState.SAVING)

        try:
            await self._call(self._saver, result)
        except Exception as e:
            error = SaveFailure(
                f"Save failed for {item_id!r}: {e}", item_id=item_id, run_id=continuation.run_id
            )
            error.__cause__ = e
            self._handle_failure(error, item_id, report)
            if self._should_raise(report):
                raise error from e
            return

        if report is not None:
            report.saved.append(item_id)
        self._dispatch = None
        self._transition(ChainState.DISPATCHING)
        logger.debug("Saved %s", item_id)
        self._emit(self._on_save_callback, dispatch.item, result)
        self._schedule_batch()

    # --- Internals ---

    def _check_collaborators(self) -> None:
        missing = [
            name
            for name, func in (
                ("reader", self._reader),
                ("calculator", self._calculator),
                ("saver", self._saver),
            )
            if func is None
        ]
        if missing:
            raise ChainError(f"No {', '.join(missing)} registered")

    def _transition(self, new: ChainState) -> None:
        if new not in TRANSITIONS[self._state]:
            raise RuntimeError(f"Illegal chain transition {self._state.value} -> {new.value}")
        self._state = new

    def _schedule_batch(self) -> None:
        task = asyncio.create_task(self._run_batch())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_batch(self) -> None:
        """One unit of work: pop the next id and process it."""
        try:
            async with self._lock:
                if not self._active:
                    return
                if self._state is ChainState.QUEUE_LOADED:
                    self._transition(ChainState.DISPATCHING)
                item_ids = await self._pop()
                if not item_ids:
                    self._finish_run()
                    return
            for item_id in item_ids:
                await self.process_one(item_id)
        except ChainError:
            # Already recorded on the report and passed to on_failure.
            pass
        except Exception as e:
            logger.exception("Dispatch failed for chain %r", self.name)
            report = self._report
            error = ChainError(f"Dispatch failed: {e}", run_id=report.run_id if report else None)
            error.__cause__ = e
            self._abort_run(error, None)

    async def _pop(self) -> list[str]:
        popped = await self.store.pop(self.name)
        if popped is None:
            return []
        _run_id, item_id = popped
        return [item_id]

    def _finish_run(self) -> None:
        self._transition(ChainState.IDLE)
        self._active = False
        report = self._report
        if report is None or report.done:
            return
        report.state = ChainState.IDLE
        self._finish_report(report)
        logger.info(
            "Run %s finished: %d saved, %d failed in %.2fs",
            report.run_id,
            len(report.saved),
            len(report.failed),
            report.duration,
        )
        self._emit(self._on_complete_callback, report)

    def _finish_report(self, report: RunReport) -> None:
        report.finished_at = time.time()
        report._done.set()

    def _is_current(self, continuation: Continuation) -> bool:
        return self._dispatch is not None and self._dispatch.continuation.token == continuation.token

    def _should_raise(self, report: RunReport | None) -> bool:
        return self.failure_policy is FailurePolicy.ABORT and report is self._report

    def _handle_failure(self, error: ChainError, item_id: str | None, report: RunReport | None) -> None:
        """Apply the failure policy to a failed cycle."""
        if self._dispatch is not None:
            self._cancel_timeout(self._dispatch)
            self._dispatch = None

        if report is not self._report:
            # The run was superseded while this item was in flight.
            logger.warning("Item %s of superseded run failed: %s", item_id, error)
            if report is not None and item_id is not None:
                report.failed.append((item_id, error))
            self._emit(self._on_failure_callback, item_id, error)
            self._transition(ChainState.DISPATCHING)
            self._schedule_batch()
            return

        if self.failure_policy is FailurePolicy.CONTINUE:
            logger.warning("Item %s failed, continuing: %s", item_id, error)
            if report is not None and item_id is not None:
                report.failed.append((item_id, error))
            self._emit(self._on_failure_callback, item_id, error)
            self._transition(ChainState.DISPATCHING)
            self._schedule_batch()
            return

        self._abort_run(error, item_id)

    def _abort_run(self, error: ChainError, item_id: str | None) -> None:
        if self._dispatch is not None:
            self._cancel_timeout(self._dispatch)
            self._dispatch = None

        logger.error("Chain %r aborted at %s: %s", self.name, item_id, error)
        if self._state in _ACTIVE_STATES:
            self._transition(ChainState.FAILED)
        self._active = False

        report = self._report
        if report is not None and not report.done:
            report.state = ChainState.FAILED
            report.error = error
            self._finish_report(report)

        self._emit(self._on_failure_callback, item_id, error)

    def _on_callback_timeout(self, token: str) -> None:
        dispatch = self._dispatch
        if dispatch is None or dispatch.continuation.token != token:
            return
        dispatch.timeout_handle = None
        item_id = dispatch.item.id
        error = CallbackTimeout(
            f"No callback for {item_id!r} within {self.callback_timeout}s",
            item_id=item_id,
            run_id=dispatch.continuation.run_id,
        )
        self._handle_failure(error, item_id, dispatch.report)

    @staticmethod
    def _cancel_timeout(dispatch: DispatchState) -> None:
        if dispatch.timeout_handle is not None:
            dispatch.timeout_handle.cancel()
            dispatch.timeout_handle = None

    @staticmethod
    async def _call(func: Callable, *args: Any) -> Any:
        if inspect.iscoroutinefunction(func):
            return await func(*args)
        return func(*args)

    def _emit(self, callback: Callable | None, *args: Any) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Event callback %r raised", getattr(callback, "__name__", callback))
