"""Rich progress display driven by workflow events."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Sequence

from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text


@dataclass
class StepInfo:
    """Display state of one pipeline step."""

    number: int
    name: str
    status: str = "pending"  # pending, running, complete, error
    detail: str = ""
    started_at: float | None = None
    completed_at: float | None = None

    @property
    def duration(self) -> float | None:
        """Get duration in seconds."""
        if self.started_at is None:
            return None
        end = self.completed_at or time.time()
        return end - self.started_at

    @property
    def duration_str(self) -> str:
        d = self.duration
        if d is None:
            return ""
        if d < 60:
            return f"{d:.1f}s"
        minutes = int(d // 60)
        seconds = int(d % 60)
        return f"{minutes}m {seconds}s"


def describe_event(payload: dict[str, Any]) -> str:
    """One-line rich markup summary of an event payload."""
    event_type = payload.get("type", "?")
    sequence = payload.get("sequence")
    prefix = f"[dim]{sequence:>4}[/dim] " if isinstance(sequence, int) else ""

    if event_type == "stage":
        body = f"[bold cyan]{escape(str(payload.get('stage')))}[/bold cyan] {escape(str(payload.get('message', '')))}"
    elif event_type == "progress":
        body = f"{payload.get('percent', 0):>5.1f}% {escape(str(payload.get('message', '')))}"
    elif event_type == "branch-status":
        body = ", ".join(
            f"{escape(str(b.get('id')))}={b.get('status')}" for b in payload.get("branches") or []
        )
    elif event_type in ("thinking", "error"):
        style = "red" if event_type == "error" else "italic"
        body = f"[{style}]{escape(str(payload.get('message', '')))}[/{style}]"
    elif event_type == "step-summary":
        body = escape(str(payload.get("summary", "")))
    elif event_type == "tool-call":
        body = f"{escape(str(payload.get('toolName')))}({escape(str(payload.get('args', '')))})"
    elif event_type == "round":
        body = f"round {payload.get('round')}/{payload.get('totalRounds', '?')} {escape(str(payload.get('speaker', '')))}"
    elif event_type == "divergence":
        body = escape(str(payload.get("topic", "")))
    elif event_type == "complete":
        body = f"[green]complete[/green] in {payload.get('duration', 0)}ms"
    else:
        body = ""

    return f"{prefix}[magenta]{event_type:<13}[/magenta] {body}".rstrip()


class RunProgress:
    """Live step table for one run, updated from its events."""

    STATUS_ICONS = {
        "pending": "[dim]...[/dim]",
        "running": "[yellow]...[/yellow]",
        "complete": "[green]OK[/green]",
        "error": "[red]ERR[/red]",
    }

    def __init__(self, console: Console, title: str, step_names: Sequence[str]) -> None:
        """Initialize progress display.

        Args:
            console: Rich console to write to.
            title: Label for the panel (e.g. "AAPL consensus").
            step_names: Pipeline step names in order.
        """
        self.console = console
        self.title = title
        self.started_at = time.time()
        self.steps: dict[str, StepInfo] = {
            name: StepInfo(number=i, name=name) for i, name in enumerate(step_names, start=1)
        }
        self.current: str | None = None
        self.event_count = 0
        self.is_complete = False
        self.error_message: str | None = None
        self._live: Live | None = None

    def _build_display(self) -> Panel:
        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column("Step", width=3, justify="right")
        table.add_column("Status", width=4)
        table.add_column("Name", width=22)
        table.add_column("Detail", style="dim")
        table.add_column("Time", width=8, justify="right", style="dim")

        for step in self.steps.values():
            if step.status == "running":
                name_style = "bold yellow"
            elif step.status == "complete":
                name_style = "green"
            elif step.status == "error":
                name_style = "red"
            else:
                name_style = "dim"

            table.add_row(
                f"{step.number}.",
                self.STATUS_ICONS.get(step.status, ""),
                Text(step.name, style=name_style),
                step.detail[:45] + "..." if len(step.detail) > 45 else step.detail,
                step.duration_str,
            )

        footer = Text()
        footer.append("Events: ", style="dim")
        footer.append(str(self.event_count), style="cyan")
        footer.append("  |  ", style="dim")
        footer.append("Elapsed: ", style="dim")
        footer.append(f"{time.time() - self.started_at:.1f}s", style="cyan")

        if self.is_complete:
            title = f"[bold green]{self.title} complete[/bold green]"
            border_style = "green"
        elif self.error_message:
            title = f"[bold red]{self.title} failed[/bold red]"
            border_style = "red"
        else:
            title = f"[bold cyan]{self.title}...[/bold cyan]"
            border_style = "cyan"

        return Panel(Group(table, Text(""), footer), title=title, border_style=border_style)

    def _finish_current(self, status: str) -> None:
        if self.current and self.current in self.steps:
            step = self.steps[self.current]
            if step.status == "running":
                step.status = status
                step.completed_at = time.time()

    def handle_event(self, payload: dict[str, Any]) -> None:
        """Update the display from one event payload."""
        self.event_count += 1
        event_type = payload.get("type")

        if event_type == "stage":
            name = str(payload.get("stage", "")).split(".", 1)[-1]
            if name in self.steps:
                self._finish_current("complete")
                self.current = name
                step = self.steps[name]
                step.status = "running"
                step.started_at = time.time()
                step.detail = str(payload.get("message") or "")
        elif event_type in ("progress", "thinking", "step-summary") and self.current:
            detail = payload.get("message") or payload.get("summary")
            if detail:
                self.steps[self.current].detail = str(detail)
        elif event_type == "complete":
            self._finish_current("complete")
            self.is_complete = True
        elif event_type == "error" and payload.get("recoverable") is False:
            self._finish_current("error")
            self.error_message = str(payload.get("message", "failed"))
            if self.current:
                self.steps[self.current].detail = self.error_message

        if self._live:
            self._live.update(self._build_display())

    def __enter__(self) -> RunProgress:
        self._live = Live(
            self._build_display(),
            console=self.console,
            refresh_per_second=4,
            transient=False,
            auto_refresh=True,
            get_renderable=self._build_display,
        )
        self._live.__enter__()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._live:
            self._live.update(self._build_display())
            self._live.__exit__(exc_type, exc_val, exc_tb)
            self._live = None
