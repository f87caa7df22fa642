"""Text rendering of ranked results for display, copy, and export."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from teachlens.ml.ranking import RankedResult

REPORT_HEADER = "[Image classification result]"
EXPORT_PREFIX = "tm-result"


def to_display_percent(probability: float) -> str:
    """Format a probability as a percentage with one decimal place."""
    return f"{probability * 100:.1f}%"


def format_timestamp(iso: str | None) -> str:
    """Render an ISO-8601 timestamp as local ``YYYY-MM-DD HH:MM``.

    Aware timestamps are converted to local time, naive ones are taken as
    already local. Anything unparsable yields an empty string.
    """
    if not isinstance(iso, str):
        return ""
    try:
        moment = datetime.fromisoformat(iso)
    except ValueError:
        return ""
    if moment.tzinfo is not None:
        moment = moment.astimezone()
    return moment.strftime("%Y-%m-%d %H:%M")


def to_report_text(result: RankedResult, timestamp: str) -> str:
    """Build the fixed-structure report used for clipboard copy and export.

    Output is byte-identical for the same result and timestamp.
    """
    best = result.best
    lines = [REPORT_HEADER]
    if best is not None:
        lines.append(f"Top: {best.label} ({to_display_percent(best.probability)})")
    lines.append("")
    lines.extend(f"- {entry.label}: {to_display_percent(entry.probability)}" for entry in result)
    lines.append("")
    lines.append(f"Analyzed at: {format_timestamp(timestamp)}")
    return "\n".join(lines)


def export_filename(now: datetime | None = None, ext: str = "txt") -> str:
    """Name for a downloaded report, stamped with the download time (local)."""
    moment = now if now is not None else datetime.now()
    return f"{EXPORT_PREFIX}-{moment:%Y%m%d-%H%M}.{ext}"
