"""Rich-based display for quotechain-sim.

This module provides visual output for the simulator using Rich library.
It's decoupled from the simulation logic - it just renders data.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


@dataclass
class EventRecord:
    """A recent event for display."""

    timestamp: datetime
    event_type: str
    item_id: str
    details: str = ""


@dataclass
class SimulationState:
    """Current state of the simulation for display.

    This is the data contract between the runner and display.
    The runner updates this; the display renders it.
    """

    # Queue stats
    submitted: int = 0
    queued: int = 0
    saved: int = 0
    failed: int = 0

    # Current cycle
    in_flight: str | None = None
    max_in_flight: int = 0
    chain_state: str = "idle"
    error: str | None = None

    # Timing
    start_time: float = 0.0
    elapsed: float = 0.0

    # Saved quote totals by id
    totals: dict[str, float] = field(default_factory=dict)

    # Recent events (most recent first)
    events: list[EventRecord] = field(default_factory=list)
    max_events: int = 10

    # Config display
    target_count: int = 0
    latency_ms: int = 0
    latency_jitter: float = 0.2
    error_rate: float = 0.0
    error_stage: str = "calculate"
    policy: str = "abort"

    @property
    def throughput(self) -> float:
        """Quotes saved per second."""
        if self.elapsed > 0:
            return self.saved / self.elapsed
        return 0.0

    @property
    def progress(self) -> float:
        """Fraction complete (0.0 to 1.0)."""
        if self.submitted > 0:
            return (self.saved + self.failed) / self.submitted
        return 0.0

    def add_event(self, event_type: str, item_id: str, details: str = "") -> None:
        """Add an event to the display log."""
        self.events.insert(0, EventRecord(
            timestamp=datetime.now(),
            event_type=event_type,
            item_id=item_id,
            details=details,
        ))
        # Trim to max
        if len(self.events) > self.max_events:
            self.events = self.events[:self.max_events]


class SimulatorDisplay:
    """Rich-based TUI display for the simulator.

    - Queue stats panel
    - Current cycle panel
    - Recent events log
    - Config footer
    """

    def __init__(self, state: SimulationState, console: Console | None = None):
        self.state = state
        self.console = console or Console()
        self._live: Live | None = None

    def __enter__(self) -> SimulatorDisplay:
        self._live = Live(
            self._build_layout(),
            console=self.console,
            refresh_per_second=10,
            screen=False,
        )
        self._live.__enter__()
        return self

    def __exit__(self, *args) -> None:
        if self._live:
            self._live.__exit__(*args)
            self._live = None

    def refresh(self) -> None:
        """Update the display with current state."""
        if self._live:
            self._live.update(self._build_layout())

    def _build_layout(self) -> Panel:
        layout = Layout()
        layout.split_column(
            Layout(name="queue", size=4),
            Layout(name="cycle", size=4),
            Layout(name="events", size=8),
            Layout(name="controls", size=3),
        )
        layout["queue"].update(self._build_queue_section())
        layout["cycle"].update(self._build_cycle_section())
        layout["events"].update(self._build_events_section())
        layout["controls"].update(self._build_controls_section())

        return Panel(
            layout,
            title="[bold cyan]quotechain-sim[/bold cyan]",
            border_style="cyan",
        )

    def _build_queue_section(self) -> Panel:
        s = self.state

        stats = Table.grid(expand=True, padding=(0, 2))
        for _ in range(4):
            stats.add_column(justify="left")
        stats.add_row(
            f"[dim]Remaining:[/dim] [bold]{s.queued:,}[/bold]",
            f"[dim]Saved:[/dim] [bold green]{s.saved:,}[/bold green]",
            f"[dim]Failed:[/dim] [bold red]{s.failed}[/bold red]",
            f"[dim]Progress:[/dim] [bold]{s.progress * 100:.0f}%[/bold] {self._progress_bar(s.progress, 12)}",
        )

        stats2 = Table.grid(expand=True, padding=(0, 2))
        stats2.add_column(justify="left")
        stats2.add_column(justify="left")
        stats2.add_row(
            f"[dim]Throughput:[/dim] [bold]{s.throughput:.1f}/s[/bold]",
            f"[dim]Elapsed:[/dim] [bold]{s.elapsed:.1f}s[/bold]",
        )

        content = Table.grid(expand=True)
        content.add_row(stats)
        content.add_row(stats2)
        return Panel(content, title="[bold]Queue[/bold]", border_style="blue")

    def _build_cycle_section(self) -> Panel:
        s = self.state

        # Anything above 1 means two quotes were in flight at once
        max_style = "green" if s.max_in_flight <= 1 else "red"

        table = Table.grid(expand=True, padding=(0, 2))
        table.add_column(justify="left")
        table.add_column(justify="left")
        table.add_column(justify="left")
        table.add_row(
            f"[dim]State:[/dim] [bold]{s.chain_state}[/bold]",
            f"[dim]In flight:[/dim] [bold yellow]{s.in_flight or '—'}[/bold yellow]",
            f"[dim]Max in flight:[/dim] [bold {max_style}]{s.max_in_flight}[/bold {max_style}]",
        )
        if s.error:
            table.add_row(f"[red]{s.error[:70]}[/red]", "", "")
        return Panel(table, title="[bold]Cycle[/bold]", border_style="blue")

    def _build_events_section(self) -> Panel:
        s = self.state

        table = Table(box=None, expand=True, padding=(0, 1), show_header=False)
        table.add_column("Time", width=10, style="dim")
        table.add_column("Event", width=12)
        table.add_column("Item", width=14)
        table.add_column("Details")

        event_styles = {
            "saved": "green",
            "failed": "red",
            "aborted": "bold red",
            "dispatched": "yellow",
            "submitted": "dim",
            "complete": "bold green",
        }

        for event in s.events[:6]:
            style = event_styles.get(event.event_type, "white")
            table.add_row(
                event.timestamp.strftime("%H:%M:%S"),
                f"[{style}]{event.event_type}[/{style}]",
                event.item_id[:14],
                event.details[:40] if event.details else "",
            )

        if not s.events:
            table.add_row("[dim]No events yet[/dim]", "", "", "")

        return Panel(table, title="[bold]Recent Events[/bold]", border_style="blue")

    def _build_controls_section(self) -> Panel:
        s = self.state

        text = Text()
        text.append("Latency: ", style="dim")
        text.append(f"{s.latency_ms}ms", style="bold")
        if s.latency_jitter > 0:
            text.append(f" ±{s.latency_jitter*100:.0f}%", style="dim")
        text.append("  Error: ", style="dim")
        text.append(f"{s.error_rate*100:.0f}%", style="bold red" if s.error_rate > 0 else "bold")
        if s.error_rate > 0:
            text.append(f" @{s.error_stage}", style="dim")
        text.append("  Policy: ", style="dim")
        text.append(s.policy, style="bold")
        text.append("  Target: ", style="dim")
        text.append(f"{s.target_count:,}", style="bold")
        text.append("    Ctrl+C to stop", style="dim")

        return Panel(text, title="[bold]Config[/bold]", border_style="dim")

    @staticmethod
    def _progress_bar(pct: float, width: int = 10) -> str:
        """Create a mini progress bar."""
        pct = min(1.0, max(0.0, pct))
        filled = int(pct * width)
        empty = width - filled
        return f"[green]{'█' * filled}{'░' * empty}[/green]"


def print_simple_stats(state: SimulationState) -> None:
    """Print a one-line progress update."""
    s = state
    done = s.saved + s.failed
    pct = (done / s.submitted * 100) if s.submitted > 0 else 0

    print(
        f"\r[{done}/{s.submitted}] "
        f"remaining:{s.queued} ✓:{s.saved} ✗:{s.failed} "
        f"({pct:.0f}%) {s.throughput:.1f}/s",
        end="",
        flush=True,
    )
