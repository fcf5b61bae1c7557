"""
Status projection: tracker state to display rows.

Projection is pure. It reads unit state and never mutates it, so projecting
the same state twice yields equal rows.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..models.core import UnitOfWork, UnitStatus
from .tracker import UnitOfWorkTracker

STATUS_GLYPHS = {
    UnitStatus.IDLE: "○",
    UnitStatus.RUNNING: "●",
    UnitStatus.DONE: "✓",
    UnitStatus.ERROR: "✗",
}

PIPELINE_CONNECTOR = "↓"


@dataclass(frozen=True)
class StatusRow:
    """One display row for a tracked unit."""
    label: str
    status_glyph: str
    elapsed_seconds: int
    activity_preview: str
    connector: Optional[str] = None


def truncate_preview(text: str, preview_chars: int) -> str:
    text = " ".join(text.split())
    if len(text) <= preview_chars:
        return text
    return text[:max(preview_chars - 1, 0)] + "…"


def _row(unit: UnitOfWork, preview_chars: int, connector: Optional[str] = None) -> StatusRow:
    return StatusRow(
        label=unit.label,
        status_glyph=STATUS_GLYPHS[unit.status],
        elapsed_seconds=unit.elapsed_ms // 1000,
        activity_preview=truncate_preview(unit.last_activity_line, preview_chars),
        connector=connector
    )


def project_units(units: Iterable[UnitOfWork], preview_chars: int = 60) -> List[StatusRow]:
    """Independent rows, one per unit (dispatcher layout)."""
    return [_row(unit, preview_chars) for unit in units]


def project_pipeline(units: Iterable[UnitOfWork], preview_chars: int = 60) -> List[StatusRow]:
    """Rows in step order; every row except the last points at the next step."""
    units = list(units)
    last = len(units) - 1
    return [
        _row(unit, preview_chars, PIPELINE_CONNECTOR if index < last else None)
        for index, unit in enumerate(units)
    ]


def render_rows(rows: List[StatusRow]) -> str:
    """Plain-text summary of projected rows."""
    if not rows:
        return ""
    width = max(len(row.label) for row in rows)
    lines = []
    for row in rows:
        line = f"{row.status_glyph} {row.label.ljust(width)}  {row.elapsed_seconds:>4}s"
        if row.activity_preview:
            line += f"  {row.activity_preview}"
        lines.append(line.rstrip())
        if row.connector:
            lines.append(f"  {row.connector}")
    return "\n".join(lines)


class StatusProjector:
    """Projects a tracker's units with a fixed preview width."""

    def __init__(self, tracker: UnitOfWorkTracker, preview_chars: int = 60):
        self.tracker = tracker
        self.preview_chars = preview_chars

    def rows(self, unit_ids: Optional[Iterable[str]] = None, pipeline: bool = False) -> List[StatusRow]:
        units = self.tracker.units(unit_ids)
        if pipeline:
            return project_pipeline(units, self.preview_chars)
        return project_units(units, self.preview_chars)

    def render(self, unit_ids: Optional[Iterable[str]] = None, pipeline: bool = False) -> str:
        return render_rows(self.rows(unit_ids, pipeline))
