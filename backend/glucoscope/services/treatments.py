from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Iterable, Optional, Sequence

from glucoscope.core.settings import AnalyticsConfig
from glucoscope.models.entries import GlucoseReading, Treatment, TreatmentKind
from glucoscope.models.iob import TempBasalResult
from glucoscope.models.statistics import (
    DayData,
    FoodTotals,
    InsulinTotals,
    OverallAverages,
    TreatmentSummary,
    TreatmentTotals,
)
from glucoscope.services.statistics import calculate_time_in_range

logger = logging.getLogger(__name__)

BOLUS_EVENT_TYPES = frozenset(
    {"Meal Bolus", "Correction Bolus", "Snack Bolus", "Bolus Wizard", "Combo Bolus", "Bolus", "SMB"}
)


def is_bolus_treatment(t: Treatment) -> bool:
    return t.eventType in BOLUS_EVENT_TYPES


def _bolus_insulin(t: Treatment) -> float:
    if t.kind == TreatmentKind.COMBO_BOLUS and t.enteredinsulin is not None:
        return t.enteredinsulin
    return t.insulin or 0.0


def validate_treatment(t: Treatment) -> bool:
    if not t.id or not t.id.strip():
        return False
    if t.timestamp_ms is None:
        return False
    if t.insulin is not None and t.insulin < 0:
        return False
    if t.carbs is not None and t.carbs < 0:
        return False
    return True


def clean_treatments(treatments: Iterable[Treatment]) -> list[Treatment]:
    treatments = list(treatments)
    cleaned = [t for t in treatments if validate_treatment(t)]
    dropped = len(treatments) - len(cleaned)
    if dropped:
        logger.warning("Dropped invalid treatments", extra={"dropped": dropped, "kept": len(cleaned)})
    return cleaned


def total_insulin(summary: TreatmentSummary) -> float:
    return summary.totals.insulin.bolus + summary.totals.insulin.basal


def bolus_percentage(summary: TreatmentSummary) -> float:
    total = total_insulin(summary)
    return round(summary.totals.insulin.bolus / total * 100, 1) if total > 0 else 0.0


def basal_percentage(summary: TreatmentSummary) -> float:
    total = total_insulin(summary)
    return round(summary.totals.insulin.basal / total * 100, 1) if total > 0 else 0.0


def calculate_treatment_summary(
    treatments: Sequence[Treatment],
    basal_delivery: Optional[TempBasalResult] = None,
) -> TreatmentSummary:
    """
    Food and insulin totals. With a resolved basal delivery the basal total is
    the delivered temp plus scheduled insulin; otherwise it is the insulin
    recorded on temp-basal treatments.
    """
    carbs = protein = fat = bolus = recorded_basal = 0.0
    for t in treatments:
        carbs += max(t.carbs or 0.0, 0.0)
        protein += max(t.protein or 0.0, 0.0)
        fat += max(t.fat or 0.0, 0.0)
        if is_bolus_treatment(t):
            bolus += max(_bolus_insulin(t), 0.0)
        elif t.kind == TreatmentKind.TEMP_BASAL:
            recorded_basal += max(t.insulin or 0.0, 0.0)

    if basal_delivery is not None:
        basal = basal_delivery.tempbasal + basal_delivery.scheduledbasal
    else:
        basal = recorded_basal

    summary = TreatmentSummary(
        totals=TreatmentTotals(
            food=FoodTotals(carbs=round(carbs, 1), protein=round(protein, 1), fat=round(fat, 1)),
            insulin=InsulinTotals(bolus=round(bolus, 3), basal=round(basal, 3)),
        ),
        treatment_count=len(treatments),
        basal_bolus_ratio=round(basal / bolus, 2) if bolus > 0 else 0.0,
    )
    summary.bolus_percentage = bolus_percentage(summary)
    summary.basal_percentage = basal_percentage(summary)
    return summary


def _utc_day(mills: int) -> str:
    return datetime.fromtimestamp(mills / 1000, tz=timezone.utc).date().isoformat()


def build_day_data(
    readings: Sequence[GlucoseReading],
    treatments: Sequence[Treatment],
    config: AnalyticsConfig,
) -> list[DayData]:
    """Per-UTC-day treatment summary and time in range."""
    by_day_readings: dict[str, list[GlucoseReading]] = defaultdict(list)
    by_day_treatments: dict[str, list[Treatment]] = defaultdict(list)
    for r in readings:
        by_day_readings[_utc_day(r.mills)].append(r)
    for t in treatments:
        ts = t.timestamp_ms
        if ts is not None:
            by_day_treatments[_utc_day(ts)].append(t)

    days = sorted(set(by_day_readings) | set(by_day_treatments))
    return [
        DayData(
            date=day,
            treatment_summary=calculate_treatment_summary(by_day_treatments.get(day, [])),
            time_in_ranges=calculate_time_in_range(by_day_readings.get(day, []), config.thresholds, config),
        )
        for day in days
    ]


def calculate_overall_averages(days: Sequence[DayData]) -> Optional[OverallAverages]:
    if not days:
        return None
    n = len(days)
    bolus = sum(d.treatment_summary.totals.insulin.bolus for d in days)
    basal = sum(d.treatment_summary.totals.insulin.basal for d in days)
    total = bolus + basal
    return OverallAverages(
        avg_total_daily=round(total / n, 2),
        avg_bolus=round(bolus / n, 2),
        avg_basal=round(basal / n, 2),
        bolus_percentage=round(bolus / total * 100, 1) if total > 0 else 0.0,
        basal_percentage=round(basal / total * 100, 1) if total > 0 else 0.0,
        avg_carbs=round(sum(d.treatment_summary.totals.food.carbs for d in days) / n, 1),
        avg_protein=round(sum(d.treatment_summary.totals.food.protein for d in days) / n, 1),
        avg_fat=round(sum(d.treatment_summary.totals.food.fat for d in days) / n, 1),
        avg_time_in_range=round(sum(d.time_in_ranges.percentages.target for d in days) / n, 1),
        avg_tight_time_in_range=round(sum(d.time_in_ranges.percentages.tight_target for d in days) / n, 1),
    )


__all__ = [
    "BOLUS_EVENT_TYPES",
    "basal_percentage",
    "bolus_percentage",
    "build_day_data",
    "calculate_overall_averages",
    "calculate_treatment_summary",
    "clean_treatments",
    "is_bolus_treatment",
    "total_insulin",
    "validate_treatment",
]
