from __future__ import annotations

from datetime import datetime


def hours_between(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600.0


def round_total(value: float) -> float:
    return round(value, 6)


def round_avg(total: float, count: int) -> float | None:
    if count <= 0:
        return None
    return round(total / count, 3)


def fold_duration(total: float | None, count: int, sample_hours: float) -> tuple[int, float, float | None]:
    """Add one dwell-time sample to a running count and total.

    The total keeps 6 decimals and the average is taken from that rounded total.
    """
    count += 1
    total = round_total((total or 0.0) + sample_hours)
    return count, total, round_avg(total, count)


def classify_delay(
    avg_hours: float | None,
    *,
    warning_hours: float = 72.0,
    critical_hours: float = 168.0,
) -> str | None:
    """Map an average dwell time onto ``low`` / ``medium`` / ``high``.

    Stages without samples have no severity.
    """
    if avg_hours is None:
        return None
    critical = max(warning_hours, critical_hours)
    if avg_hours >= critical:
        return "high"
    if avg_hours >= warning_hours:
        return "medium"
    return "low"
