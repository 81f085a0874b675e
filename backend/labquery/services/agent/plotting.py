"""Shape finalized query rows for the plot view.

A plotted row needs a timestamp ``t`` and a numeric ``y``. Rows without both
are dropped, the rest are sorted by time with ``t`` as epoch milliseconds, and
the out-of-range flags are derived from the reference bounds when the query
did not select them.
"""

from __future__ import annotations

import math
from datetime import UTC, date, datetime
from typing import Any, Optional

# Numeric timestamps below this are epoch seconds, at or above it epoch ms.
EPOCH_MS_CUTOFF = 10**12


def parse_timestamp(value: Any) -> Optional[int]:
    """Epoch milliseconds for ISO strings, dates, epoch seconds or epoch ms."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return int(value * 1000 if value < EPOCH_MS_CUTOFF else value)
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return parse_timestamp(int(text))
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return int(parsed.timestamp() * 1000)


def coerce_numeric(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        cleaned = value.strip().replace(",", ".")
        if not cleaned:
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def out_of_range_flags(row: dict[str, Any]) -> dict[str, Any]:
    """Fill ``is_out_of_range`` and ``is_value_out_of_range`` from each other or the bounds."""
    current = row.get("is_out_of_range")
    legacy = row.get("is_value_out_of_range")
    if current is not None and legacy is not None:
        return row
    if current is not None or legacy is not None:
        flag = current if current is not None else legacy
        return {**row, "is_out_of_range": flag, "is_value_out_of_range": flag}

    lower = coerce_numeric(row.get("reference_lower"))
    upper = coerce_numeric(row.get("reference_upper"))
    if lower is None and upper is None:
        return row
    value = row["y"]
    flag = (upper is not None and value > upper) or (lower is not None and value < lower)
    return {**row, "is_out_of_range": flag, "is_value_out_of_range": flag}


def shape_plot_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Drop unusable rows, sort by ``t`` ascending and normalize ``t``/``y``."""
    shaped = []
    for row in rows:
        t = parse_timestamp(row.get("t"))
        y = coerce_numeric(row.get("y"))
        if t is None or y is None:
            continue
        shaped.append(out_of_range_flags({**row, "t": t, "y": y}))
    shaped.sort(key=lambda row: row["t"])
    return shaped
