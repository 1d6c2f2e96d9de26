"""Simulation runner for quotechain-sim.

This module handles the actual simulation logic, decoupled from display.
It updates a SimulationState object that can be rendered by any display.

The fake pricing service runs on a thread pool and reports back through
`continuation.complete`, the same way a callback-based vendor client would.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import random
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

import quotechain
from quotechain import ChainError, FailurePolicy

if TYPE_CHECKING:
    from quotechain_sim.display import SimulationState

logger = logging.getLogger(__name__)

ERROR_STAGES = ("read", "calculate", "save")


@dataclass
class SimConfig:
    """Configuration for a simulation run."""

    count: int = 50
    latency_ms: int = 50
    latency_jitter: float = 0.2  # ±20% variance
    error_rate: float = 0.0
    error_stage: str = "calculate"
    policy: str = FailurePolicy.ABORT.value
    callback_timeout: float | None = None
    duration: float | None = None
    db_path: str | None = None  # None = in-memory store
    workers: int = 4  # threads in the fake pricing service


class SimulatedError(RuntimeError):
    """Injected failure."""


class SimulationRunner:
    """Runs simulations and updates state for display.

    This class is decoupled from display - it just updates state.
    The display polls state to render.

    Usage:
        config = SimConfig(count=100, latency_ms=50)
        state = SimulationState()
        runner = SimulationRunner(config, state)

        # In your event loop:
        await runner.run()
    """

    def __init__(
        self,
        config: SimConfig,
        state: "SimulationState",
        on_event: Callable[[str, str, str], None] | None = None,
    ):
        if config.error_stage not in ERROR_STAGES:
            raise ValueError(f"Unknown error stage: {config.error_stage}. Use one of {', '.join(ERROR_STAGES)}")

        self.config = config
        self.state = state
        self.on_event = on_event or state.add_event

        self._chain: quotechain.Chain | None = None
        self._pool: concurrent.futures.ThreadPoolExecutor | None = None
        self._running = False
        self._in_flight: set[str] = set()

    def _maybe_fail(self, stage: str, item_id: str) -> None:
        if stage == self.config.error_stage and random.random() < self.config.error_rate:
            raise SimulatedError(f"Simulated {stage} error for {item_id}")

    def _latency(self) -> float:
        base = self.config.latency_ms / 1000.0
        if base <= 0:
            return 0.0
        jitter = self.config.latency_jitter
        return base * random.uniform(1 - jitter, 1 + jitter)

    def _enter(self, item_id: str) -> None:
        self._in_flight.add(item_id)
        self.state.in_flight = item_id
        self.state.max_in_flight = max(self.state.max_in_flight, len(self._in_flight))

    def _leave(self, item_id: str | None) -> None:
        if item_id is not None:
            self._in_flight.discard(item_id)
        if self.state.in_flight == item_id:
            self.state.in_flight = None

    def _price(self, quote: dict, continuation: quotechain.Continuation) -> None:
        """Blocking pricing call, runs on the pool."""
        time.sleep(self._latency())
        lines = quote["lines"]
        net_total = round(sum(line["qty"] * line["unit_price"] * (1 - line["discount"]) for line in lines), 2)
        result = {**quote, "net_total": net_total, "success": True}
        future = continuation.complete(result)
        future.add_done_callback(self._log_callback_outcome)

    @staticmethod
    def _log_callback_outcome(future: concurrent.futures.Future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.debug("Callback raised: %s", error)

    def _build_chain(self) -> quotechain.Chain:
        config = self.config
        store = quotechain.SqliteQueueStore(config.db_path) if config.db_path else quotechain.MemoryQueueStore()
        chain = quotechain.Chain(
            "sim",
            store=store,
            failure_policy=config.policy,
            callback_timeout=config.callback_timeout,
        )

        @chain.reader
        async def read_quote(item_id):
            self._enter(item_id)
            await asyncio.sleep(0)
            self._maybe_fail("read", item_id)
            n_lines = random.randint(1, 5)
            return {
                "id": item_id,
                "lines": [
                    {
                        "qty": random.randint(1, 20),
                        "unit_price": round(random.uniform(5, 500), 2),
                        "discount": random.choice((0.0, 0.05, 0.1)),
                    }
                    for _ in range(n_lines)
                ],
            }

        @chain.calculator
        def calculate(quote, continuation):
            self._maybe_fail("calculate", quote["id"])
            self._pool.submit(self._price, quote, continuation)

        @chain.saver
        async def save_quote(result):
            self._maybe_fail("save", result["id"])
            self.state.totals[result["id"]] = result["net_total"]

        @chain.on_dispatch
        def on_dispatch(item):
            self.on_event("dispatched", item.id, f"{len(item.payload['lines'])} lines")

        @chain.on_save
        def on_save(item, result):
            self._leave(item.id)
            self.state.saved += 1
            self.on_event("saved", item.id, f"{result['net_total']:,.2f}")

        @chain.on_failure
        def on_failure(item_id, error):
            self._leave(item_id)
            self.state.failed += 1
            self.on_event("failed", item_id or "-", str(error))

        return chain

    async def run(self) -> None:
        """Run the simulation to completion."""
        self._running = True
        self.state.start_time = time.time()
        self.state.target_count = self.config.count
        self.state.latency_ms = self.config.latency_ms
        self.state.latency_jitter = self.config.latency_jitter
        self.state.error_rate = self.config.error_rate
        self.state.error_stage = self.config.error_stage
        self.state.policy = self.config.policy

        self._pool = concurrent.futures.ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="pricing"
        )
        self._chain = self._build_chain()

        item_ids = [f"Q-{i:05d}" for i in range(self.config.count)]
        await self._chain.submit(item_ids)
        self.state.submitted = len(item_ids)
        self.on_event("submitted", self._chain.report.run_id, f"{len(item_ids)} quotes")

        await self._monitor()

        report = self._chain.report
        if report is not None and report.done:
            try:
                await self._chain.join()
            except ChainError as e:
                self.state.error = str(e)
                self.on_event("aborted", report.run_id, str(e))
            else:
                self.on_event("complete", report.run_id, f"{len(report.saved)} saved")

        await self.cleanup()

    async def _monitor(self) -> None:
        """Monitor until the run finishes or duration exceeded."""
        while self._running:
            await self._update_state()

            report = self._chain.report
            if report is not None and report.done:
                break

            if self.config.duration and self._elapsed >= self.config.duration:
                break

            await asyncio.sleep(0.05)
        await self._update_state()

    async def _update_state(self) -> None:
        if not self._chain:
            return
        self.state.elapsed = self._elapsed
        self.state.queued = len(await self._chain.remaining())
        self.state.chain_state = self._chain.state.value

    @property
    def _elapsed(self) -> float:
        """Elapsed time since start."""
        return time.time() - self.state.start_time

    def stop(self) -> None:
        """Request simulation stop."""
        self._running = False

    async def cleanup(self) -> None:
        """Clean up resources. Call after interrupt or completion."""
        if self._chain:
            await self._chain.close()
            self._chain = None
        if self._pool:
            self._pool.shutdown(wait=False, cancel_futures=True)
            self._pool = None
        self._running = False
