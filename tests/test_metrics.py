from __future__ import annotations

from ats_pipeline.services.metrics import classify_delay, fold_duration, round_avg


def test_fold_duration_averages_the_rounded_total() -> None:
    count, total, avg = fold_duration(None, 0, 1 / 3)
    assert (count, total, avg) == (1, 0.333333, 0.333)

    count, total, avg = fold_duration(total, count, 1 / 3)
    assert (count, total, avg) == (2, 0.666666, 0.333)

    count, total, avg = fold_duration(total, count, 2.0000004)
    assert (count, total, avg) == (3, 2.666666, round_avg(2.666666, 3))


def test_classify_delay_thresholds() -> None:
    assert classify_delay(None) is None
    assert classify_delay(71.9) == "low"
    assert classify_delay(72) == "medium"
    assert classify_delay(168) == "high"
    assert classify_delay(10, warning_hours=12, critical_hours=6) == "low"
    assert classify_delay(12, warning_hours=12, critical_hours=6) == "high"
