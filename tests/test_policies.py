"""Failure policies, callback timeouts, and operator abort."""

import asyncio

import pytest

import quotechain
from conftest import FakePricing
from quotechain import (
    CalculateSubmissionFailure,
    CallbackTimeout,
    ChainAborted,
    ChainState,
    ReadFailure,
    SaveFailure,
    StaleContinuation,
)


class TestContinuePolicy:
    """With the continue policy a failed item is recorded and skipped."""

    async def test_read_failure_skipped(self, make_chain):
        pricing = FakePricing(fail_read={"B"})
        chain = make_chain(pricing, failure_policy="continue")
        failures = []

        @chain.on_failure
        def on_failure(item_id, error):
            failures.append(item_id)

        await chain.submit(["A", "B", "C"])
        report = await chain.join(timeout=1)

        assert report.saved == ["A", "C"]
        assert [item_id for item_id, _ in report.failed] == ["B"]
        assert isinstance(report.failed[0][1], ReadFailure)
        assert report.error is None
        assert failures == ["B"]
        assert chain.state is ChainState.IDLE
        assert pricing.max_active == 1

    async def test_calculate_failure_skipped(self, make_chain):
        pricing = FakePricing(fail_calculate={"A"})
        chain = make_chain(pricing, failure_policy="continue")

        await chain.submit(["A", "B"])
        report = await chain.join(timeout=1)

        assert report.saved == ["B"]
        assert report.failed[0][0] == "A"
        assert isinstance(report.failed[0][1], CalculateSubmissionFailure)

    async def test_save_failure_skipped(self, make_chain):
        pricing = FakePricing(fail_save={"B"})
        chain = make_chain(pricing, failure_policy="continue")

        await chain.submit(["A", "B", "C"])
        report = await chain.join(timeout=1)

        assert report.saved == ["A", "C"]
        assert report.failed[0][0] == "B"
        assert isinstance(report.failed[0][1], SaveFailure)
        # Recorded on the report instead of raised at the caller
        assert pricing.callback_errors == []

    async def test_repeated_id_failures_all_recorded(self, make_chain):
        pricing = FakePricing(fail_read={"A"})
        chain = make_chain(pricing, failure_policy="continue")

        await chain.submit(["A", "B", "A"])
        report = await chain.join(timeout=1)

        assert pricing.reads == ["A", "B", "A"]
        assert report.saved == ["B"]
        assert [item_id for item_id, _ in report.failed] == ["A", "A"]
        assert all(isinstance(error, ReadFailure) for _, error in report.failed)


class TestCallbackTimeout:
    """A calculator that never calls back fails the cycle."""

    async def test_timeout_aborts_chain(self, make_chain):
        gate = asyncio.Event()
        pricing = FakePricing(gate=gate)
        chain = make_chain(pricing, callback_timeout=0.02)

        await chain.submit(["A", "B"])
        with pytest.raises(CallbackTimeout) as exc_info:
            await chain.join(timeout=1)

        assert exc_info.value.item_id == "A"
        assert await chain.remaining() == ["B"]
        assert chain.in_flight is None

        # The late callback is rejected and nothing is saved
        gate.set()
        await asyncio.sleep(0.02)
        assert pricing.saves == []
        assert len(pricing.callback_errors) == 1
        assert isinstance(pricing.callback_errors[0], StaleContinuation)

    async def test_timeout_with_continue_moves_on(self):
        chain = quotechain.Chain(failure_policy="continue", callback_timeout=0.02)
        saved = []

        @chain.reader
        def read(item_id):
            return item_id

        @chain.calculator
        def calculate(payload, continuation):
            if payload != "lost":
                continuation.complete(payload)

        @chain.saver
        def save(result):
            saved.append(result)

        await chain.submit(["a", "lost", "b"])
        report = await chain.join(timeout=1)
        await chain.close()

        assert saved == ["a", "b"]
        assert [item_id for item_id, _ in report.failed] == ["lost"]
        assert isinstance(report.failed[0][1], CallbackTimeout)

    async def test_timeout_cancelled_after_callback(self, make_chain):
        pricing = FakePricing(delay=0.001)
        chain = make_chain(pricing, callback_timeout=0.05)

        await chain.submit(["A", "B"])
        report = await chain.join(timeout=1)
        await asyncio.sleep(0.1)

        assert report.saved == ["A", "B"]
        assert report.error is None
        assert chain.state is ChainState.IDLE


class TestAbort:
    """Operator abort and close."""

    async def test_abort_idle_chain(self, pricing, make_chain):
        chain = make_chain(pricing)
        assert await chain.abort() is False

    async def test_abort_in_flight(self, make_chain):
        gate = asyncio.Event()
        pricing = FakePricing(gate=gate)
        chain = make_chain(pricing)
        failures = []

        @chain.on_failure
        def on_failure(item_id, error):
            failures.append((item_id, str(error)))

        await chain.submit(["A", "B", "C"])
        while chain.in_flight != "A":
            await asyncio.sleep(0.001)

        assert await chain.abort("operator stop") is True
        with pytest.raises(ChainAborted, match="operator stop"):
            await chain.join(timeout=1)

        assert chain.state is ChainState.FAILED
        assert await chain.remaining() == ["B", "C"]
        assert failures == [("A", "operator stop")]

        gate.set()
        await asyncio.sleep(0.02)
        assert pricing.saves == []
        assert isinstance(pricing.callback_errors[0], StaleContinuation)

    async def test_close_aborts_running_chain(self, make_chain):
        gate = asyncio.Event()
        pricing = FakePricing(gate=gate)
        chain = make_chain(pricing)

        await chain.submit(["A", "B"])
        await asyncio.sleep(0.01)
        await chain.close()

        with pytest.raises(ChainAborted, match="closed"):
            await chain.join(timeout=1)
        assert await chain.remaining() == ["B"]
