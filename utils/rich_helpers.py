"""Utility helpers built on top of Rich for consistent CLI UX."""

from __future__ import annotations

from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

from rich import box
from rich.console import Console, Group, RenderableType
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

_console: Optional[Console] = None


def get_console(*, stderr: bool = False) -> Console:
    global _console
    if stderr:
        return Console(stderr=True)
    if _console is None:
        _console = Console()
    return _console


def build_table(
    columns: Sequence[Tuple[str, Dict[str, Any]]],
    rows: Iterable[Sequence[Any]],
    *,
    title: Optional[str] = None,
    caption: Optional[str] = None,
) -> Table:
    table = Table(title=title, box=box.SQUARE, caption=caption, highlight=True)
    for name, meta in columns:
        table.add_column(name, **meta)
    for row in rows:
        table.add_row(*(format_cell(cell) for cell in row))
    return table


def format_cell(value: Any) -> str:
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, (int, float)):
        return f"{value:,}" if isinstance(value, int) else f"{value:.2f}"
    if value is None:
        return "-"
    return str(value)


def format_phase_indicator(phase: str) -> Text:
    mapping = {
        "discovering": "cyan",
        "extracting": "blue",
        "completed": "green",
        "failed": "red",
    }
    return Text(phase.capitalize(), style=mapping.get(phase, "dim"))


def render_run_summary(
    statistics: Dict[str, Any], *, title: str = "Scraping Summary", console: Optional[Console] = None
) -> Table:
    """Print the counters of a finished run as a two-column table."""
    local_console = console or get_console()
    counters = [
        ("Operation", statistics.get("operation_id")),
        ("Brands discovered", statistics.get("brands_discovered", 0)),
        ("Brands processed", statistics.get("brands_processed", 0)),
        ("Products discovered", statistics.get("products_discovered", 0)),
        ("Products processed", statistics.get("products_processed", 0)),
        ("Duplicates skipped", statistics.get("duplicates_skipped", 0)),
        ("Errors", statistics.get("errors_encountered", 0)),
        ("Progress", f"{statistics.get('percentage', 0)}%"),
        ("Cancelled", statistics.get("cancelled", False)),
    ]
    for label in ("brand_jobs", "product_jobs"):
        jobs = statistics.get(label)
        if jobs:
            counters.append(
                (
                    label.replace("_", " ").capitalize(),
                    f"{jobs.get('completed', 0)} completed / {jobs.get('failed', 0)} failed",
                )
            )

    table = build_table(
        [("Metric", {"style": "bold"}), ("Value", {"justify": "right"})],
        counters,
        title=title,
    )
    phase = statistics.get("phase")
    renderables: list[RenderableType] = [table]
    if phase:
        renderables.insert(0, format_phase_indicator(phase))
    local_console.print(Group(*renderables))
    return table


def render_error(message: str, *, details: Optional[str] = None, console: Optional[Console] = None) -> None:
    local_console = console or get_console(stderr=True)
    body: RenderableType = Text(message, style="bold red")
    if details:
        body = Group(Text(message, style="bold red"), Text(details, style="dim"))
    local_console.print(Panel(body, title="Error", border_style="red"))
