from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Literal, Optional, Sequence

from glucoscope.core.errors import InputIssue
from glucoscope.core.settings import AnalyticsConfig
from glucoscope.models.entries import ActiveProfile, Treatment, TreatmentKind
from glucoscope.models.iob import BasalSegment, CobResult, IobResult, TreatmentRef
from glucoscope.services.basal import MS_PER_HOUR, MS_PER_MINUTE, basal_segments
from glucoscope.services.math.curves import (
    InsulinCurves,
    carb_activity,
    carb_iob,
    insulin_activity,
    insulin_iob,
)

logger = logging.getLogger(__name__)

CHUNK_MS = 5 * MS_PER_MINUTE


@dataclass
class InsulinActionProfile:
    dia_hours: float
    curve: Literal["bilinear", "exponential"]
    peak_minutes: float = 75.0

    @property
    def duration_minutes(self) -> float:
        return InsulinCurves.duration(self.dia_hours, self.curve, self.peak_minutes)

    def iob(self, elapsed: float) -> float:
        return insulin_iob(elapsed, self.dia_hours, self.curve, self.peak_minutes)

    def activity(self, elapsed: float) -> float:
        return insulin_activity(elapsed, self.dia_hours, self.curve, self.peak_minutes)


@dataclass
class CarbAbsorptionProfile:
    absorption_minutes: float
    delay_minutes: float
    curve: Literal["linear", "bilinear"]
    carbs_hr: Optional[float] = None

    def absorption_for(self, t: Treatment) -> float:
        if t.absorptionTime and t.absorptionTime > 0:
            return t.absorptionTime
        if self.carbs_hr and self.carbs_hr > 0 and t.carbs:
            return t.carbs / self.carbs_hr * 60
        return self.absorption_minutes


def insulin_profile(profile: Optional[ActiveProfile], config: AnalyticsConfig) -> InsulinActionProfile:
    if profile is None:
        return InsulinActionProfile(config.dia_hours, config.insulin_curve, config.insulin_peak_minutes)
    return InsulinActionProfile(
        dia_hours=profile.dia,
        curve=profile.insulin_curve or config.insulin_curve,
        peak_minutes=profile.insulin_peak_minutes or config.insulin_peak_minutes,
    )


def carb_profile(profile: Optional[ActiveProfile], config: AnalyticsConfig) -> CarbAbsorptionProfile:
    if profile is None:
        return CarbAbsorptionProfile(config.carb_absorption_minutes, config.carb_delay_minutes, config.carb_curve)
    delay = profile.carb_delay_minutes if profile.carb_delay_minutes is not None else config.carb_delay_minutes
    return CarbAbsorptionProfile(
        absorption_minutes=profile.carb_absorption_minutes or config.carb_absorption_minutes,
        delay_minutes=delay,
        curve=config.carb_curve,
        carbs_hr=profile.carbs_hr,
    )


def _ref(t: Treatment, mills: int) -> TreatmentRef:
    return TreatmentRef(
        id=t.id,
        mills=mills,
        insulin=t.insulin,
        carbs=t.carbs,
        event_type=t.eventType,
        entered_by=t.enteredBy,
    )


def bolus_units(t: Treatment) -> float:
    """Immediately delivered units; for combo boluses only the up-front part."""
    if t.kind == TreatmentKind.BOLUS:
        return t.insulin or 0.0
    if t.kind == TreatmentKind.COMBO_BOLUS:
        if t.insulin is not None:
            return t.insulin
        return (t.enteredinsulin or 0) * (t.splitNow or 0) / 100
    return 0.0


def _timestamped(
    treatments: Sequence[Treatment], issues: list[InputIssue]
) -> list[tuple[int, Treatment]]:
    timed: list[tuple[int, Treatment]] = []
    for t in treatments:
        ts = t.timestamp_ms
        if ts is None:
            issue = InputIssue(reason="unparseable or missing timestamp", record_id=t.id)
            logger.warning("Skipping treatment", extra={"issue": issue.describe()})
            issues.append(issue)
            continue
        timed.append((ts, t))
    return timed


def _chunked_basal(
    segments: Sequence[BasalSegment], at_mills: int, action: InsulinActionProfile
) -> tuple[float, float, float, float]:
    """
    Decay basal-like delivery as micro-boluses of at most 5 minutes.
    Returns (net temp iob, net temp activity, combo iob, combo activity).
    """
    basal_iob = basal_activity = combo_iob = combo_activity = 0.0
    for segment in segments:
        if segment.kind == "scheduled":
            continue
        rate = segment.rate - segment.scheduled_rate if segment.kind == "temp" else segment.rate
        if rate == 0:
            continue
        cursor = segment.start
        while cursor < segment.end:
            chunk_end = min(cursor + CHUNK_MS, segment.end)
            units = rate * (chunk_end - cursor) / MS_PER_HOUR
            elapsed = (at_mills - (cursor + chunk_end) / 2) / MS_PER_MINUTE
            if segment.kind == "temp":
                basal_iob += units * action.iob(elapsed)
                basal_activity += units * action.activity(elapsed)
            else:
                combo_iob += units * action.iob(elapsed)
                combo_activity += units * action.activity(elapsed)
            cursor = chunk_end
    return basal_iob, basal_activity, combo_iob, combo_activity


def calculate_iob(
    treatments: Sequence[Treatment],
    at_mills: int,
    profile: Optional[ActiveProfile],
    config: AnalyticsConfig,
) -> IobResult:
    config.validate_config()
    if profile is not None:
        profile.validate_profile()
    action = insulin_profile(profile, config)
    window_ms = int(action.duration_minutes * MS_PER_MINUTE)

    issues: list[InputIssue] = []
    timed = _timestamped(treatments, issues)

    total_iob = 0.0
    total_activity = 0.0
    last_bolus: Optional[tuple[int, Treatment]] = None

    for ts, t in timed:
        units = bolus_units(t)
        if units <= 0:
            continue
        if ts > at_mills:
            continue
        elapsed = (at_mills - ts) / MS_PER_MINUTE
        if elapsed >= action.duration_minutes:
            continue
        total_iob += units * action.iob(elapsed)
        total_activity += units * action.activity(elapsed)
        if last_bolus is None or ts >= last_bolus[0]:
            last_bolus = (ts, t)

    segments, _ = basal_segments(
        [t for _, t in timed],
        profile or ActiveProfile(dia=action.dia_hours),
        at_mills - window_ms,
        at_mills,
    )
    basal_iob, basal_activity, combo_iob, combo_activity = _chunked_basal(segments, at_mills, action)
    total_iob += combo_iob
    total_activity += combo_activity + basal_activity

    iob = round(max(total_iob, 0.0), 3)
    if not math.isfinite(iob):
        iob = 0.0
    display = "%.2f" % iob
    result = IobResult(
        iob=iob,
        activity=round(total_activity, 4),
        basaliob=round(basal_iob, 3),
        device=last_bolus[1].enteredBy if last_bolus else None,
        mills=at_mills,
        last_bolus=_ref(last_bolus[1], last_bolus[0]) if last_bolus else None,
        display=display,
        display_line=f"IOB: {display}U" if iob > 0 else "",
        diagnostics=[issue.describe() for issue in issues],
    )
    logger.debug(
        "IOB computed",
        extra={"iob": result.iob, "basaliob": result.basaliob, "skipped": len(issues)},
    )
    return result


def calculate_cob(
    treatments: Sequence[Treatment],
    at_mills: int,
    profile: Optional[ActiveProfile],
    config: AnalyticsConfig,
) -> CobResult:
    config.validate_config()
    carbs = carb_profile(profile, config)

    issues: list[InputIssue] = []
    total_cob = 0.0
    total_activity = 0.0
    last_carbs: Optional[tuple[int, Treatment]] = None

    for ts, t in _timestamped(treatments, issues):
        grams = t.carbs or 0.0
        if grams <= 0 or ts > at_mills:
            continue
        absorption = carbs.absorption_for(t)
        elapsed = (at_mills - ts) / MS_PER_MINUTE
        if elapsed >= carbs.delay_minutes + absorption:
            continue
        total_cob += grams * carb_iob(elapsed, absorption, carbs.delay_minutes, carbs.curve)
        total_activity += grams * carb_activity(elapsed, absorption, carbs.delay_minutes, carbs.curve)
        if last_carbs is None or ts >= last_carbs[0]:
            last_carbs = (ts, t)

    cob = round(max(total_cob, 0.0), 1)
    display = f"{round(cob)}g"
    return CobResult(
        cob=cob,
        activity=round(total_activity, 4),
        last_carbs=_ref(last_carbs[1], last_carbs[0]) if last_carbs else None,
        mills=at_mills,
        display=display,
        display_line=f"COB: {display}" if cob > 0 else "",
        diagnostics=[issue.describe() for issue in issues],
    )


__all__ = [
    "CarbAbsorptionProfile",
    "InsulinActionProfile",
    "bolus_units",
    "calculate_cob",
    "calculate_iob",
    "carb_profile",
    "insulin_profile",
]
