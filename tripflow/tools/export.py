"""CSV export of a day plan — pure file I/O."""

from __future__ import annotations

import csv
import io
import logging
import os
import tempfile
from pathlib import Path
from typing import Sequence

from tripflow.state import Location

logger = logging.getLogger(__name__)

CSV_HEADER = [
    "Order",
    "Name",
    "Address",
    "Scheduled Date",
    "Stay Duration (min)",
    "Travel Time from Previous (min)",
    "Distance from Previous (km)",
    "Status",
]


def _atomic_write(filepath: Path, content: str) -> None:
    """Write content atomically via temp file + os.replace."""
    filepath.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=str(filepath.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, str(filepath))
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def plan_rows(locations: Sequence[Location]) -> list[list[object]]:
    rows: list[list[object]] = [list(CSV_HEADER)]
    for index, loc in enumerate(locations, start=1):
        travel = loc.travel_time_from_previous
        distance = loc.distance_from_previous
        rows.append([
            index,
            loc.name,
            loc.address,
            loc.scheduled_date.isoformat() if loc.scheduled_date else "",
            int(loc.stay_duration.total_seconds() // 60),
            int(travel.total_seconds() // 60) if travel is not None else "-",
            f"{distance / 1000:.2f}" if distance is not None else "-",
            "Skipped" if loc.is_skipped else "Active",
        ])
    return rows


def render_plan_csv(locations: Sequence[Location]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerows(plan_rows(locations))
    return buffer.getvalue()


def export_plan_csv(locations: Sequence[Location], path: str | Path) -> Path | None:
    """Write the ordered plan to ``path``. Returns None when there is nothing to export."""
    if not locations:
        return None
    target = Path(path)
    _atomic_write(target, render_plan_csv(locations))
    logger.info("Exported %d locations to %s", len(locations), target)
    return target
