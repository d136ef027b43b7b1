from __future__ import annotations

import logging
from typing import Optional, Sequence

import numpy as np

from glucoscope.core.settings import AnalyticsConfig
from glucoscope.models.entries import GlucoseReading, Treatment, TreatmentKind
from glucoscope.models.statistics import DataGap, DataQuality, GapAnalysis

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60_000


def _clamp_pct(value: float) -> float:
    if not np.isfinite(value):
        return 0.0
    return min(100.0, max(0.0, value))


def find_gaps(readings: Sequence[GlucoseReading], config: AnalyticsConfig) -> list[DataGap]:
    """Holes between consecutive readings further apart than gap_factor x nominal."""
    gaps: list[DataGap] = []
    nominal = config.nominal_interval_ms
    for prev, nxt in zip(readings, readings[1:]):
        if nxt.mills - prev.mills > config.gap_threshold_ms:
            start = prev.mills + nominal
            gaps.append(DataGap(start=start, end=nxt.mills, duration=round((nxt.mills - start) / MS_PER_MINUTE, 1)))
    return gaps


def _overlap(gap: DataGap, start: int, end: int) -> int:
    return max(0, min(gap.end, end) - max(gap.start, start))


def _treatment_times(treatments: Sequence[Treatment], kind: TreatmentKind) -> list[int]:
    times = []
    for t in treatments:
        if t.kind != kind:
            continue
        ts = t.timestamp_ms
        if ts is not None:
            times.append(ts)
    return times


def noise_level(readings: Sequence[GlucoseReading], config: AnalyticsConfig) -> float:
    """Mean absolute second difference over gap-free triples, relative to the baseline."""
    if len(readings) < 3:
        return 0.0
    second_diffs = []
    for a, b, c in zip(readings, readings[1:], readings[2:]):
        if b.mills - a.mills > config.gap_threshold_ms or c.mills - b.mills > config.gap_threshold_ms:
            continue
        second_diffs.append(abs(c.sgv - 2 * b.sgv + a.sgv))
    if not second_diffs:
        return 0.0
    score = float(np.mean(second_diffs)) / config.noise_baseline_mgdl
    return round(min(1.0, max(0.0, score)), 3)


def assess_data_quality(
    readings: Sequence[GlucoseReading],
    treatments: Sequence[Treatment],
    config: AnalyticsConfig,
    start: Optional[int] = None,
    end: Optional[int] = None,
) -> DataQuality:
    ordered = sorted(readings, key=lambda r: r.mills)
    nominal = config.nominal_interval_ms

    if start is not None and end is not None and end > start:
        window_ms = end - start
    elif ordered:
        window_ms = ordered[-1].mills + nominal - ordered[0].mills
    else:
        window_ms = 0
    expected = int(round(window_ms / nominal)) if nominal > 0 else 0
    actual = len(ordered)

    if not ordered:
        return DataQuality(total_readings=expected, missing_readings=expected)

    sensor_changes = _treatment_times(treatments, TreatmentKind.SENSOR_CHANGE)
    calibrations = [
        ts
        for ts in _treatment_times(treatments, TreatmentKind.CALIBRATION)
        if (start is None or ts >= start) and (end is None or ts <= end)
    ]

    gaps: list[DataGap] = []
    warmups: list[DataGap] = []
    for gap in find_gaps(ordered, config):
        # the gap's previous reading sits one nominal interval before gap.start
        if any(gap.start - nominal <= ts <= gap.end for ts in sensor_changes):
            warmups.append(gap)
        else:
            gaps.append(gap)

    first, last = ordered[0].mills, ordered[-1].mills
    window_start = start if start is not None and end is not None and end > start else first
    window_end = end if start is not None and end is not None and end > start else last + nominal

    missing_ms = sum(_overlap(g, window_start, window_end) for g in gaps + warmups)
    # uncovered edges: no reading at all near the window boundaries
    if first - window_start > config.gap_threshold_ms:
        missing_ms += first - window_start
    if window_end - last > config.gap_threshold_ms:
        missing_ms += window_end - (last + nominal)
    active_window_ms = window_end - window_start
    cgm_active = 100.0 if missing_ms <= 0 else (active_window_ms - missing_ms) / active_window_ms * 100

    durations = [g.duration for g in gaps]
    quality = DataQuality(
        total_readings=expected,
        missing_readings=max(0, expected - actual),
        data_completeness=round(_clamp_pct(actual / expected * 100), 1) if expected > 0 else 0.0,
        cgm_active_percent=round(_clamp_pct(cgm_active), 1),
        gap_analysis=GapAnalysis(
            gaps=gaps,
            longest_gap=max(durations) if durations else 0.0,
            average_gap=round(float(np.mean(durations)), 1) if durations else 0.0,
        ),
        noise_level=noise_level(ordered, config),
        calibration_events=len(calibrations),
        sensor_warmups=len(warmups),
    )
    logger.debug(
        "Data quality assessed",
        extra={"readings": actual, "gaps": len(gaps), "warmups": len(warmups)},
    )
    return quality


__all__ = ["assess_data_quality", "find_gaps", "noise_level"]
