"""Simulator runner tests."""

import random

import pytest

from quotechain_sim.cli import print_final_summary
from quotechain_sim.display import SimulationState, SimulatorDisplay
from quotechain_sim.runner import SimConfig, SimulationRunner


class TestSimulationRunner:
    async def test_run_saves_everything_serially(self):
        random.seed(1)
        state = SimulationState()
        runner = SimulationRunner(SimConfig(count=6, latency_ms=1), state)

        await runner.run()

        assert state.submitted == 6
        assert state.saved == 6
        assert state.failed == 0
        assert state.queued == 0
        assert state.max_in_flight == 1
        assert state.error is None
        assert sorted(state.totals) == [f"Q-{i:05d}" for i in range(6)]

    async def test_read_errors_abort(self):
        state = SimulationState()
        config = SimConfig(count=4, latency_ms=1, error_rate=1.0, error_stage="read")
        runner = SimulationRunner(config, state)

        await runner.run()

        assert state.saved == 0
        assert state.failed == 1
        assert state.queued == 3
        assert "Simulated read error" in state.error

    async def test_continue_policy_with_sqlite(self, tmp_path):
        state = SimulationState()
        config = SimConfig(
            count=5,
            latency_ms=1,
            error_rate=1.0,
            error_stage="save",
            policy="continue",
            db_path=str(tmp_path / "sim.db"),
        )
        runner = SimulationRunner(config, state)

        await runner.run()

        assert state.saved == 0
        assert state.failed == 5
        assert state.error is None

    def test_unknown_error_stage(self):
        with pytest.raises(ValueError, match="error stage"):
            SimulationRunner(SimConfig(error_stage="print"), SimulationState())


class TestDisplay:
    def test_events_trimmed(self):
        state = SimulationState(max_events=3)
        for i in range(5):
            state.add_event("saved", f"Q-{i}")

        assert [e.item_id for e in state.events] == ["Q-4", "Q-3", "Q-2"]

    def test_progress(self):
        state = SimulationState(submitted=10, saved=4, failed=1)
        assert state.progress == 0.5

    def test_layout_renders(self):
        state = SimulationState(submitted=2, saved=1, in_flight="Q-00001", max_in_flight=1)
        state.add_event("saved", "Q-00000", "12.50")
        display = SimulatorDisplay(state)
        assert display._build_layout() is not None

    def test_final_summary(self, capsys):
        state = SimulationState(submitted=3, saved=2, failed=1, error="boom")
        print_final_summary(state)

        out = capsys.readouterr().out
        assert "Simulation Results" in out
        assert "boom" in out
