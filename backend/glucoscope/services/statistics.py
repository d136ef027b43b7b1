from __future__ import annotations

import logging
import math
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

import numpy as np

from glucoscope.core.settings import AnalyticsConfig
from glucoscope.models.entries import GlucoseReading, Treatment
from glucoscope.models.statistics import (
    AnalysisTime,
    AveragedStats,
    BasicGlucoseStats,
    DistributionDataPoint,
    GlucoseAnalytics,
    GlucosePercentiles,
    GlycemicThresholds,
    GlycemicVariability,
    TimeInRangeBands,
    TimeInRangeEpisodes,
    TimeInRangeMetrics,
)
from glucoscope.services.data_quality import assess_data_quality

logger = logging.getLogger(__name__)

MAX_VALID_GLUCOSE = 600.0
MMOL_FACTOR = 18.0
MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000
PERCENTILES = (5, 10, 25, 50, 75, 90, 95)

DISTRIBUTION_LOW = 40
DISTRIBUTION_HIGH = 400
DISTRIBUTION_STEP = 10


def _finite(value: float) -> float:
    return float(value) if math.isfinite(value) else 0.0


def _is_valid(value: float) -> bool:
    return 0 < value <= MAX_VALID_GLUCOSE


def extract_glucose_values(readings: Iterable[GlucoseReading]) -> list[float]:
    return [r.sgv for r in readings if _is_valid(r.sgv)]


def valid_readings(readings: Iterable[GlucoseReading]) -> list[GlucoseReading]:
    """Readings with a plausible value, ordered by time."""
    return sorted((r for r in readings if _is_valid(r.sgv)), key=lambda r: r.mills)


def calculate_mean(values: Sequence[float]) -> float:
    if len(values) == 0:
        return 0.0
    return round(_finite(np.mean(values)), 1)


def calculate_percentile(sorted_values: Sequence[float], percentile: float) -> float:
    """Linear interpolation at rank p/100 * (n - 1)."""
    if len(sorted_values) == 0:
        return 0.0
    return _finite(np.percentile(np.asarray(sorted_values, dtype=float), percentile))


def population_sd(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return _finite(np.std(np.asarray(values, dtype=float)))


def calculate_basic_stats(values: Sequence[float]) -> BasicGlucoseStats:
    valid = [v for v in values if _is_valid(v)]
    if not valid:
        return BasicGlucoseStats()
    arr = np.sort(np.asarray(valid, dtype=float))
    pct = {p: round(calculate_percentile(arr, p), 1) for p in PERCENTILES}
    return BasicGlucoseStats(
        count=len(arr),
        mean=calculate_mean(arr),
        median=round(_finite(np.median(arr)), 1),
        min=float(arr[0]),
        max=float(arr[-1]),
        standard_deviation=round(population_sd(arr), 1),
        percentiles=GlucosePercentiles(**{f"p{p}": v for p, v in pct.items()}),
    )


def _band(value: float, t: GlycemicThresholds) -> str:
    if value < t.severe_low:
        return "severe_low"
    if value < t.target_bottom:
        return "low"
    if value <= t.target_top:
        return "target"
    if value <= t.severe_high:
        return "high"
    return "severe_high"


def _interval_ms(readings: Sequence[GlucoseReading], i: int, config: AnalyticsConfig) -> float:
    if i == len(readings) - 1:
        return config.nominal_interval_ms
    interval = readings[i + 1].mills - readings[i].mills
    if interval > config.gap_threshold_ms:
        return config.nominal_interval_ms
    return max(interval, 0)


def _count_episodes(
    readings: Sequence[GlucoseReading],
    predicate: Callable[[float], bool],
    config: AnalyticsConfig,
) -> int:
    episodes = 0
    run_start: Optional[int] = None
    run_last: Optional[int] = None
    min_dwell_ms = config.episode_dwell_minutes * MS_PER_MINUTE

    def close() -> None:
        nonlocal episodes
        if run_start is not None and run_last is not None and run_last - run_start >= min_dwell_ms:
            episodes += 1

    for r in readings:
        inside = predicate(r.sgv)
        broken = run_last is not None and r.mills - run_last > config.gap_threshold_ms
        if run_start is not None and (not inside or broken):
            close()
            run_start = run_last = None
        if inside:
            if run_start is None:
                run_start = r.mills
            run_last = r.mills
    close()
    return episodes


def calculate_time_in_range(
    readings: Iterable[GlucoseReading],
    thresholds: Optional[GlycemicThresholds] = None,
    config: Optional[AnalyticsConfig] = None,
) -> TimeInRangeMetrics:
    """
    Time-weighted share of each band. Each interval belongs to the band of its
    earlier reading; the last reading is held for one nominal interval.
    """
    config = config or AnalyticsConfig()
    t = thresholds or config.thresholds
    t.validate_ordering()
    ordered = valid_readings(readings)
    if not ordered:
        return TimeInRangeMetrics()

    durations: dict[str, float] = defaultdict(float)
    for i, r in enumerate(ordered):
        interval = _interval_ms(ordered, i, config)
        durations[_band(r.sgv, t)] += interval
        if t.tight_target_bottom <= r.sgv <= t.tight_target_top:
            durations["tight_target"] += interval

    total = sum(durations[b] for b in ("severe_low", "low", "target", "high", "severe_high"))
    names = ("severe_low", "low", "target", "tight_target", "high", "severe_high")
    if total <= 0:
        return TimeInRangeMetrics()

    percentages = TimeInRangeBands(**{n: round(durations[n] / total * 100, 2) for n in names})
    minutes = TimeInRangeBands(**{n: round(durations[n] / MS_PER_MINUTE, 1) for n in names})
    episodes = TimeInRangeEpisodes(
        severe_low=_count_episodes(ordered, lambda v: v < t.severe_low, config),
        low=_count_episodes(ordered, lambda v: v < t.low, config),
        high=_count_episodes(ordered, lambda v: v > t.high, config),
        severe_high=_count_episodes(ordered, lambda v: v > t.severe_high, config),
    )
    return TimeInRangeMetrics(percentages=percentages, durations=minutes, episodes=episodes)


def _turning_points(values: Sequence[float]) -> list[float]:
    points: list[float] = []
    for v in values:
        if points and v == points[-1]:
            continue
        if len(points) >= 2 and (points[-1] - points[-2]) * (v - points[-1]) > 0:
            # still moving the same way; extend the current leg
            points[-1] = v
        else:
            points.append(v)
    return points


def calculate_mage(values: Sequence[float]) -> float:
    """Mean amplitude of peak-to-nadir excursions larger than one SD."""
    if len(values) < 3:
        return 0.0
    sd = population_sd(values)
    if sd <= 0:
        return 0.0
    points = _turning_points(values)
    excursions = [abs(b - a) for a, b in zip(points, points[1:]) if abs(b - a) > sd]
    if not excursions:
        return 0.0
    return round(_finite(np.mean(excursions)), 1)


def calculate_conga(readings: Sequence[GlucoseReading], hours: float, config: AnalyticsConfig) -> float:
    if len(readings) < 2:
        return 0.0
    mills = np.asarray([r.mills for r in readings], dtype=np.int64)
    values = np.asarray([r.sgv for r in readings], dtype=float)
    lag = int(hours * MS_PER_HOUR)
    tolerance = config.nominal_interval_ms / 2

    targets = mills - lag
    idx = np.searchsorted(mills, targets)
    diffs: list[float] = []
    for i, j in enumerate(idx):
        best = None
        for k in (j - 1, j):
            if 0 <= k < len(mills) and abs(mills[k] - targets[i]) <= tolerance:
                if best is None or abs(mills[k] - targets[i]) < abs(mills[best] - targets[i]):
                    best = k
        if best is not None and best != i:
            diffs.append(values[i] - values[best])
    if len(diffs) < 2:
        return 0.0
    return round(_finite(np.std(diffs, ddof=1)), 1)


def risk_function(value: float, units: str = "mg/dl") -> float:
    """Kovatchev symmetrised BG scale; negative below ~112 mg/dL."""
    if value <= 1:
        return 0.0
    if units == "mmol":
        mmol = value / MMOL_FACTOR
        return 1.794 * (math.log(mmol) ** 1.026 - 1.861) if mmol > 1 else 0.0
    return 1.509 * (math.log(value) ** 1.084 - 5.381)


def _risks(values: Sequence[float], units: str) -> tuple[np.ndarray, np.ndarray]:
    f = np.asarray([risk_function(v, units) for v in values], dtype=float)
    r = 10 * f**2
    return np.where(f < 0, r, 0.0), np.where(f > 0, r, 0.0)


def calculate_risk_indices(values: Sequence[float], units: str = "mg/dl") -> tuple[float, float]:
    """(LBGI, HBGI)."""
    if len(values) < 2:
        return 0.0, 0.0
    rl, rh = _risks(values, units)
    return round(_finite(rl.mean()), 2), round(_finite(rh.mean()), 2)


def calculate_adrr(readings: Sequence[GlucoseReading], units: str = "mg/dl") -> float:
    if len(readings) < 2:
        return 0.0
    days: dict[str, list[float]] = defaultdict(list)
    for r in readings:
        day = datetime.fromtimestamp(r.mills / 1000, tz=timezone.utc).date().isoformat()
        days[day].append(r.sgv)
    ranges = []
    for values in days.values():
        rl, rh = _risks(values, units)
        ranges.append(rl.max() + rh.max())
    return round(_finite(np.mean(ranges)), 2)


def calculate_lability_index(readings: Sequence[GlucoseReading]) -> float:
    """Ryan lability index from readings at least one hour apart, scaled to one week."""
    if len(readings) < 2:
        return 0.0
    total = 0.0
    anchor = readings[0]
    for r in readings[1:]:
        dt_h = (r.mills - anchor.mills) / MS_PER_HOUR
        if dt_h < 1:
            continue
        if dt_h <= 2:
            total += ((r.sgv - anchor.sgv) / MMOL_FACTOR) ** 2 / dt_h
        anchor = r
    span_h = (readings[-1].mills - readings[0].mills) / MS_PER_HOUR
    if span_h <= 0:
        return 0.0
    return round(_finite(total * (7 * 24) / span_h), 2)


def calculate_gvi(readings: Sequence[GlucoseReading]) -> float:
    if len(readings) < 2:
        return 0.0
    mills = np.asarray([r.mills for r in readings], dtype=float) / MS_PER_MINUTE
    values = np.asarray([r.sgv for r in readings], dtype=float)
    path = np.sqrt(np.diff(mills) ** 2 + np.diff(values) ** 2).sum()
    ideal = math.sqrt((mills[-1] - mills[0]) ** 2 + (values[-1] - values[0]) ** 2)
    if ideal <= 0:
        return 0.0
    return round(_finite(path / ideal), 2)


def calculate_pgs(gvi: float, mean: float, time_in_range: float) -> float:
    return round(_finite(gvi * mean * (1 - time_in_range / 100)), 2)


def pgs_category(pgs: float) -> str:
    if pgs <= 35:
        return "excellent"
    if pgs <= 100:
        return "good"
    if pgs <= 150:
        return "poor"
    return "very poor"


def calculate_estimated_a1c(mean: float) -> float:
    if mean <= 0:
        return 0.0
    return round((mean + 46.7) / 28.7, 1)


def calculate_gmi(mean: float) -> float:
    if mean <= 0:
        return 0.0
    return round(3.31 + 0.02392 * mean, 2)


def calculate_glycemic_variability(
    readings: Iterable[GlucoseReading],
    config: Optional[AnalyticsConfig] = None,
    time_in_range: Optional[TimeInRangeMetrics] = None,
) -> GlycemicVariability:
    config = config or AnalyticsConfig()
    ordered = valid_readings(readings)
    if len(ordered) < 2:
        return GlycemicVariability()

    values = [r.sgv for r in ordered]
    mean = float(np.mean(values))
    sd = population_sd(values)
    tir = time_in_range or calculate_time_in_range(ordered, config.thresholds, config)
    lbgi, hbgi = calculate_risk_indices(values, config.glucose_units)
    gvi = calculate_gvi(ordered)
    pgs = calculate_pgs(gvi, mean, tir.percentages.target)

    variability = GlycemicVariability(
        cv=round(_finite(sd / mean * 100), 1) if mean > 0 else 0.0,
        standard_deviation=round(sd, 1),
        mage=calculate_mage(values),
        conga=calculate_conga(ordered, config.conga_hours, config),
        adrr=calculate_adrr(ordered, config.glucose_units),
        lability_index=calculate_lability_index(ordered),
        j_index=round(_finite(0.001 * (mean + sd) ** 2), 2),
        hbgi=hbgi,
        lbgi=lbgi,
        gvi=gvi,
        pgs=pgs,
        pgs_category=pgs_category(pgs),
        estimated_a1c=calculate_estimated_a1c(mean),
        gmi=calculate_gmi(mean),
    )
    logger.debug("Variability computed", extra={"count": len(values), "cv": variability.cv})
    return variability


def _bin_label(value: float) -> tuple[int, str]:
    if value < DISTRIBUTION_LOW:
        return -1, f"<{DISTRIBUTION_LOW}"
    if value >= DISTRIBUTION_HIGH:
        return DISTRIBUTION_HIGH, f">={DISTRIBUTION_HIGH}"
    lo = int(value // DISTRIBUTION_STEP * DISTRIBUTION_STEP)
    return lo, f"{lo}-{lo + DISTRIBUTION_STEP}"


def calculate_glucose_distribution(readings: Iterable[GlucoseReading]) -> list[DistributionDataPoint]:
    values = extract_glucose_values(readings)
    if not values:
        return []
    counts: dict[tuple[int, str], int] = defaultdict(int)
    for v in values:
        counts[_bin_label(v)] += 1
    return [
        DistributionDataPoint(range=label, count=count, percent=round(count / len(values) * 100, 1))
        for (_, label), count in sorted(counts.items())
    ]


def calculate_averaged_stats(readings: Iterable[GlucoseReading]) -> list[AveragedStats]:
    by_hour: dict[int, list[float]] = defaultdict(list)
    for r in readings:
        if _is_valid(r.sgv):
            by_hour[datetime.fromtimestamp(r.mills / 1000, tz=timezone.utc).hour].append(r.sgv)
    return [
        AveragedStats(hour=hour, **calculate_basic_stats(by_hour.get(hour, [])).model_dump())
        for hour in range(24)
    ]


def analyze_glucose_data(
    readings: Sequence[GlucoseReading],
    treatments: Sequence[Treatment],
    config: AnalyticsConfig,
    start: Optional[int] = None,
    end: Optional[int] = None,
    now: Optional[int] = None,
) -> GlucoseAnalytics:
    config.validate_config()
    ordered = valid_readings(readings)
    values = [r.sgv for r in ordered]
    tir = calculate_time_in_range(ordered, config.thresholds, config)
    analytics = GlucoseAnalytics(
        basic_stats=calculate_basic_stats(values),
        time_in_range=tir,
        glycemic_variability=calculate_glycemic_variability(ordered, config, tir),
        data_quality=assess_data_quality(ordered, treatments, config, start, end),
        time=AnalysisTime(
            start=start if start is not None else (ordered[0].mills if ordered else 0),
            end=end if end is not None else (ordered[-1].mills if ordered else 0),
            time_of_analysis=now if now is not None else int(datetime.now(timezone.utc).timestamp() * 1000),
        ),
    )
    return analytics


__all__ = [
    "analyze_glucose_data",
    "calculate_adrr",
    "calculate_averaged_stats",
    "calculate_basic_stats",
    "calculate_conga",
    "calculate_estimated_a1c",
    "calculate_glucose_distribution",
    "calculate_glycemic_variability",
    "calculate_gvi",
    "calculate_lability_index",
    "calculate_mage",
    "calculate_mean",
    "calculate_percentile",
    "calculate_risk_indices",
    "calculate_time_in_range",
    "extract_glucose_values",
    "pgs_category",
    "risk_function",
    "valid_readings",
]
