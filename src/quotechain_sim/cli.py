#!/usr/bin/env python3
"""
quotechain-sim: Interactive simulator for quotechain.

Usage:
    quotechain-sim --count 100 --latency 20
    quotechain-sim --count 50 --error-rate 0.05 --error-stage read --policy continue
    quotechain-sim --count 20 --db sim.db --no-tui
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import random
import signal
import sys
from datetime import datetime

from rich.console import Console
from rich.table import Table

from quotechain import MAX_ITEMS, FailurePolicy
from quotechain_sim.display import SimulationState, SimulatorDisplay, print_simple_stats
from quotechain_sim.runner import ERROR_STAGES, SimConfig, SimulationRunner


def configure_logging(verbose: bool = False) -> None:
    """Configure logging for the simulator."""
    chain_logger = logging.getLogger("quotechain")
    if verbose:
        chain_logger.setLevel(logging.DEBUG)
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        chain_logger.addHandler(handler)
    else:
        # Silence library logs - simulator handles its own display
        chain_logger.setLevel(logging.CRITICAL)


async def run_with_display(config: SimConfig, use_tui: bool = True, verbose: bool = False) -> None:
    """Run simulation with visual display.

    Args:
        config: Simulation configuration
        use_tui: Use Rich TUI display (default True)
        verbose: Print event log instead of status updates (implies no-tui)
    """
    state = SimulationState()

    if verbose:
        original_add_event = state.add_event

        def logging_add_event(event_type: str, item_id: str, details: str = "") -> None:
            ts = datetime.now().strftime("%H:%M:%S.%f")[:-3]
            print(f"{ts} {event_type:<12} {item_id:<14} {details}")
            original_add_event(event_type, item_id, details)

        state.add_event = logging_add_event  # type: ignore

    runner = SimulationRunner(config, state)

    if verbose:
        print("\nquotechain-sim [verbose]")
        print(f"   Count: {config.count}, Policy: {config.policy}")
        print(f"   Latency: {config.latency_ms}ms ±{int(config.latency_jitter*100)}%, "
              f"Error: {config.error_rate * 100:.0f}% @{config.error_stage}")
        print()
        print(f"{'TIME':<12} {'EVENT':<12} {'ITEM':<14} DETAILS")
        print("-" * 72)
        try:
            await runner.run()
        except (KeyboardInterrupt, asyncio.CancelledError):
            runner.stop()
        finally:
            await runner.cleanup()
        print("-" * 72)

    elif use_tui:
        display = SimulatorDisplay(state)

        async def update_loop():
            while True:
                display.refresh()
                await asyncio.sleep(0.1)

        with display:
            update_task = asyncio.create_task(update_loop())
            try:
                await runner.run()
            except (KeyboardInterrupt, asyncio.CancelledError):
                runner.stop()
            finally:
                update_task.cancel()
                try:
                    await update_task
                except asyncio.CancelledError:
                    pass
                display.refresh()
                await runner.cleanup()

    else:
        print("\nquotechain-sim")
        print(f"   Count: {config.count}, Latency: {config.latency_ms}ms, Policy: {config.policy}")
        print()

        async def update_loop():
            while True:
                print_simple_stats(state)
                await asyncio.sleep(0.5)

        update_task = asyncio.create_task(update_loop())
        try:
            await runner.run()
        except (KeyboardInterrupt, asyncio.CancelledError):
            runner.stop()
        finally:
            update_task.cancel()
            try:
                await update_task
            except asyncio.CancelledError:
                pass
            await runner.cleanup()
        print_simple_stats(state)
        print()

    print_final_summary(state)


def print_final_summary(state: SimulationState) -> None:
    """Print final summary after simulation."""
    console = Console()
    console.print()

    border = "red" if state.error else "green"
    table = Table(title="Simulation Results", show_header=False, border_style=border)
    table.add_column("Metric", style="dim")
    table.add_column("Value", style="bold")

    table.add_row("Submitted", str(state.submitted))
    table.add_row("Saved", f"[green]{state.saved}[/green]")
    table.add_row("Failed", f"[red]{state.failed}[/red]" if state.failed else "0")
    table.add_row("Left in queue", str(state.queued))
    table.add_row("Max in flight", str(state.max_in_flight))
    table.add_row("Duration", f"{state.elapsed:.2f}s")
    table.add_row("Throughput", f"{state.throughput:.2f}/s")
    if state.error:
        table.add_row("Aborted", f"[red]{state.error}[/red]")

    console.print(table)


def main():
    parser = argparse.ArgumentParser(
        description="quotechain simulator - run a serial quote chain against a fake pricing service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  quotechain-sim --count 100 --latency 20
  quotechain-sim --count 50 --error-rate 0.1 --error-stage save
  quotechain-sim --count 50 --error-rate 0.1 --policy continue
  quotechain-sim --count 10 --callback-timeout 0.05 --latency 100
        """,
    )

    parser.add_argument(
        "--count", "-n",
        type=int,
        default=50,
        help=f"Number of quotes to submit, at most {MAX_ITEMS} (default: 50)",
    )
    parser.add_argument(
        "--latency", "-l",
        type=int,
        default=50,
        help="Pricing service latency in ms (default: 50)",
    )
    parser.add_argument(
        "--jitter", "-j",
        type=float,
        default=0.2,
        help="Latency variance as fraction, e.g. 0.2 = ±20%% (default: 0.2)",
    )
    parser.add_argument(
        "--error-rate", "-e",
        type=float,
        default=0.0,
        help="Fraction of quotes that fail, 0.0-1.0 (default: 0.0)",
    )
    parser.add_argument(
        "--error-stage",
        choices=ERROR_STAGES,
        default="calculate",
        help="Where injected errors happen (default: calculate)",
    )
    parser.add_argument(
        "--policy", "-p",
        choices=[p.value for p in FailurePolicy],
        default=FailurePolicy.ABORT.value,
        help="What to do after a failure (default: abort)",
    )
    parser.add_argument(
        "--callback-timeout",
        type=float,
        default=None,
        help="Seconds to wait for the pricing callback (default: forever)",
    )
    parser.add_argument(
        "--duration", "-d",
        type=float,
        default=None,
        help="Maximum duration in seconds (default: run until complete)",
    )
    parser.add_argument(
        "--db",
        type=str,
        default=None,
        help="SQLite file for the queue store (default: in-memory store)",
    )
    parser.add_argument(
        "--no-tui",
        action="store_true",
        help="Disable TUI, use simple text output",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Print event log and library debug logs instead of status updates",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Random seed for reproducible behavior (default: random)",
    )

    args = parser.parse_args()

    if args.count < 0 or args.count > MAX_ITEMS:
        parser.error(f"--count must be between 0 and {MAX_ITEMS}")

    configure_logging(verbose=args.verbose)

    if args.seed is not None:
        random.seed(args.seed)

    use_tui = not args.no_tui

    config = SimConfig(
        count=args.count,
        latency_ms=args.latency,
        latency_jitter=args.jitter,
        error_rate=args.error_rate,
        error_stage=args.error_stage,
        policy=args.policy,
        callback_timeout=args.callback_timeout,
        duration=args.duration,
        db_path=args.db,
    )

    async def run_main():
        """Wrapper to handle signals properly."""
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        main_task = asyncio.create_task(run_with_display(config, use_tui=use_tui, verbose=args.verbose))
        stop_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            [main_task, stop_task],
            return_when=asyncio.FIRST_COMPLETED,
        )

        for task in pending:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        if main_task in done:
            main_task.result()

        if stop_task in done:
            print("\nInterrupted.")
            sys.exit(130)

    try:
        asyncio.run(run_main())
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
