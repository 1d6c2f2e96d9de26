"""Shared test doubles."""

import asyncio

import pytest

import quotechain
from quotechain import ChainError


class FakePricing:
    """
    Stands in for the CRM and its pricing service.

    Calls back from a separate task after `delay` seconds and records how many
    items were between read and save at the same time.
    """

    def __init__(self, delay=0.001, fail_read=(), fail_calculate=(), fail_save=(), gate=None):
        self.delay = delay
        self.fail_read = set(fail_read)
        self.fail_calculate = set(fail_calculate)
        self.fail_save = set(fail_save)
        self.gate = gate  # asyncio.Event holding back callbacks

        self.reads = []
        self.calculated = []
        self.saves = []
        self.save_attempts = []
        self.continuations = []
        self.callback_errors = []

        self.active = 0
        self.max_active = 0

    def attach(self, chain):
        chain.reader(self.read)
        chain.calculator(self.calculate)
        chain.saver(self.save)
        return chain

    async def read(self, item_id):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.reads.append(item_id)
        if item_id in self.fail_read:
            self.active -= 1
            raise RuntimeError(f"cannot read {item_id}")
        return {"id": item_id, "amount": 100}

    def calculate(self, payload, continuation):
        if payload["id"] in self.fail_calculate:
            self.active -= 1
            raise RuntimeError(f"pricing rejected {payload['id']}")
        self.continuations.append(continuation)
        asyncio.get_running_loop().create_task(self._call_back(payload, continuation))

    async def _call_back(self, payload, continuation):
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(self.delay)
        self.calculated.append(payload["id"])
        result = {**payload, "amount": payload["amount"] * 2, "success": True}
        try:
            await continuation.resume(result)
        except ChainError as e:
            self.callback_errors.append(e)

    async def save(self, result):
        self.save_attempts.append(result["id"])
        self.active -= 1
        if result["id"] in self.fail_save:
            raise RuntimeError(f"cannot save {result['id']}")
        self.saves.append(result["id"])


@pytest.fixture
def pricing():
    return FakePricing()


@pytest.fixture
async def make_chain():
    """Build chains wired to a FakePricing and close them after the test."""
    chains = []

    def _make(pricing, **kwargs):
        chain = pricing.attach(quotechain.Chain(**kwargs))
        chains.append(chain)
        return chain

    yield _make

    for chain in chains:
        await chain.close()
