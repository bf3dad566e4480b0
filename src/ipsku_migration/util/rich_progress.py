from __future__ import annotations

from typing import Any, Dict, Optional

try:
    from rich.console import Console
    from rich.progress import BarColumn, Progress, TaskProgressColumn, TextColumn, TimeElapsedColumn
    from rich.table import Table
except Exception:  # pragma: no cover - fallback when rich isn't available
    Console = None  # type: ignore[assignment]
    Progress = None  # type: ignore[assignment]
    BarColumn = None  # type: ignore[assignment]
    TaskProgressColumn = None  # type: ignore[assignment]
    TextColumn = None  # type: ignore[assignment]
    TimeElapsedColumn = None  # type: ignore[assignment]
    Table = None  # type: ignore[assignment]


def _format_subscription_counts(counts: Dict[str, int], *, max_items: int = 3) -> str:
    if not counts:
        return ""
    items = sorted(counts.items(), key=lambda item: item[0])
    shown = items[:max_items]
    tail = len(items) - len(shown)
    rendered = ", ".join([f"{name}={count}" for name, count in shown])
    if tail > 0:
        rendered = f"{rendered} (+{tail} more)"
    return rendered


class PhaseProgress:
    """Transient discovery progress bar; the detail column shows addresses found per subscription."""

    def __init__(self, *, enabled: bool, console: Optional[Console] = None) -> None:
        self._enabled = bool(enabled and Console and Progress)
        self._console = console or (Console(stderr=True) if Console else None)
        self._progress = None
        self._task: Optional[int] = None
        self._counts: Dict[str, int] = {}
        self._started = False
        if self._enabled:
            self._progress = Progress(
                TextColumn("{task.description}"),
                BarColumn(),
                TaskProgressColumn(),
                TextColumn("{task.fields[detail]}", justify="left"),
                TimeElapsedColumn(),
                console=self._console,
                transient=True,
            )

    def __enter__(self) -> PhaseProgress:
        if self._enabled and self._progress and not self._started:
            self._progress.start()
            self._started = True
        return self

    def __exit__(self, exc_type: Any, exc: Any, exc_tb: Any) -> None:
        if self._enabled and self._progress and self._started:
            self._progress.stop()
            self._started = False

    @property
    def enabled(self) -> bool:
        return self._enabled

    def start(self, description: str, total: Optional[int] = None) -> None:
        if not self._enabled or not self._progress:
            return
        self._counts = {}
        self._task = self._progress.add_task(description, total=total, detail="")

    def advance(self, label: str = "", *, count: int = 1) -> None:
        if not self._enabled or not self._progress or self._task is None:
            return
        if label:
            self._counts[label] = self._counts.get(label, 0) + count
        self._progress.update(self._task, advance=count, detail=_format_subscription_counts(self._counts))


def render_phase_summary_table(
    *,
    enabled: bool,
    title: str,
    rows: Dict[str, Any],
    console: Optional[Console] = None,
) -> None:
    if not enabled or not Table or not Console:
        return
    table = Table(title=title, show_header=True, header_style="bold")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="white")
    for key, value in rows.items():
        table.add_row(str(key), str(value))
    (console or Console()).print(table)
