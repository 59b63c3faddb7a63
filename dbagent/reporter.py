from __future__ import annotations

from typing import Any, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from dbagent.domain.models import QueryFailure, Row
from dbagent.utils.profiler import ProfileStats


def _columns(rows: Sequence[Row]) -> List[str]:
    """Column headers: dict keys in first-seen order, or positional indexes."""
    if isinstance(rows[0], dict):
        names: List[str] = []
        for row in rows:
            for key in row:
                if key not in names:
                    names.append(key)
        return names
    width = max(len(row) for row in rows)
    return [f"col{i + 1}" for i in range(width)]


def _cell(value: Any) -> str:
    return "[dim]NULL[/dim]" if value is None else escape(str(value))


def print_rows(
    rows: Sequence[Row],
    title: str,
    stats: Optional[ProfileStats] = None,
    failure: Optional[QueryFailure] = None,
    console: Optional[Console] = None,
) -> None:
    """
    Render query rows as a rich table.

    Handles both positional (list) and named (dict) rows. When profiling stats are
    given, elapsed time and peak memory of the process tree go into the caption.
    """
    console = console or Console()

    if failure is not None:
        console.print(f"[red]{failure.reason.value}[/red]: {escape(failure.message)}")

    caption = f"{len(rows):,} row(s)"
    if stats is not None:
        caption += f" │ {stats.duration_seconds:.3f}s"
        if stats.peak_rss_bytes:
            caption += f" │ peak RSS {stats.peak_rss_bytes / (1024 * 1024):.1f} MB"
            caption += f" across {stats.peak_children + 1} process(es)"

    if not rows:
        console.print(f"[yellow]No rows returned by {title}.[/yellow] [dim]{caption}[/dim]")
        return

    table = Table(title=title, box=box.ROUNDED, caption=caption)
    columns = _columns(rows)
    for name in columns:
        table.add_column(name, style="cyan", overflow="fold")

    for row in rows:
        if isinstance(row, dict):
            table.add_row(*(_cell(row.get(name)) for name in columns))
        else:
            cells = [_cell(value) for value in row]
            cells.extend("" for _ in range(len(columns) - len(cells)))
            table.add_row(*cells)

    console.print(table)


__all__ = ["print_rows"]
