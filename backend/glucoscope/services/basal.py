from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from glucoscope.core.errors import InputIssue
from glucoscope.models.entries import ActiveProfile, Treatment, TreatmentKind
from glucoscope.models.iob import (
    BasalRateAt,
    BasalSegment,
    TempBasalLink,
    TempBasalResult,
    TreatmentRef,
    Truncation,
)

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60_000
MS_PER_HOUR = 3_600_000


@dataclass(frozen=True)
class ResolvedTempBasal:
    """A temp basal after overlap resolution. The source treatment is left untouched."""

    treatment: Treatment
    start: int
    original_end: int
    effective_end: int
    predecessor: Optional[str] = None
    successor: Optional[str] = None
    cuttedby: Optional[str] = None
    cutting: Optional[str] = None

    @property
    def is_cancel(self) -> bool:
        return self.original_end <= self.start

    @property
    def contributes(self) -> bool:
        return self.effective_end > self.start

    def active_at(self, mills: int) -> bool:
        return self.contributes and self.start <= mills < self.effective_end

    def rate(self, scheduled: float) -> float:
        t = self.treatment
        if t.absolute is not None:
            return max(0.0, t.absolute)
        if t.rate is not None:
            return max(0.0, t.rate)
        if t.percent is not None:
            return max(0.0, scheduled * (100 + t.percent) / 100)
        return scheduled


@dataclass(frozen=True)
class ComboExtension:
    treatment: Treatment
    start: int
    end: int
    rate: float

    def active_at(self, mills: int) -> bool:
        return self.start <= mills < self.end


def _ref(t: Treatment, mills: int) -> TreatmentRef:
    return TreatmentRef(
        id=t.id,
        mills=mills,
        insulin=t.insulin,
        carbs=t.carbs,
        event_type=t.eventType,
        entered_by=t.enteredBy,
    )


def resolve_temp_basals(
    treatments: Iterable[Treatment],
    issues: Optional[list[InputIssue]] = None,
) -> list[ResolvedTempBasal]:
    """
    Sort-and-sweep over temp basals by start time. A later-starting temp basal
    truncates the one before it; a zero-duration temp basal is a cancel.
    """
    timed: list[tuple[int, int, Treatment]] = []
    for index, t in enumerate(treatments):
        if t.kind != TreatmentKind.TEMP_BASAL:
            continue
        start = t.timestamp_ms
        if start is None:
            issue = InputIssue(reason="temp basal without a usable timestamp", record_id=t.id)
            logger.warning("Skipping temp basal", extra={"issue": issue.describe()})
            if issues is not None:
                issues.append(issue)
            continue
        timed.append((start, index, t))

    timed.sort(key=lambda item: (item[0], item[1]))

    resolved: list[ResolvedTempBasal] = []
    for pos, (start, _, t) in enumerate(timed):
        original_end = start + int(max(t.duration or 0, 0) * MS_PER_MINUTE)
        effective_end = original_end
        predecessor = timed[pos - 1][2].id if pos > 0 else None
        successor = timed[pos + 1][2].id if pos + 1 < len(timed) else None
        cuttedby = None
        cutting = None

        if pos + 1 < len(timed):
            next_start, _, next_t = timed[pos + 1]
            if next_start < effective_end:
                effective_end = max(next_start, start)
                cuttedby = next_t.id
        if pos > 0:
            prev_start, _, prev_t = timed[pos - 1]
            prev_end = prev_start + int(max(prev_t.duration or 0, 0) * MS_PER_MINUTE)
            if start < prev_end:
                cutting = prev_t.id

        resolved.append(
            ResolvedTempBasal(
                treatment=t,
                start=start,
                original_end=original_end,
                effective_end=effective_end,
                predecessor=predecessor,
                successor=successor,
                cuttedby=cuttedby,
                cutting=cutting,
            )
        )

    return resolved


def combo_extensions(
    treatments: Iterable[Treatment],
    issues: Optional[list[InputIssue]] = None,
) -> list[ComboExtension]:
    """Extended portions of combo boluses as constant-rate deliveries (U/h)."""
    extensions: list[ComboExtension] = []
    for t in treatments:
        if t.kind != TreatmentKind.COMBO_BOLUS or not t.duration or t.duration <= 0:
            continue
        start = t.timestamp_ms
        if start is None:
            issue = InputIssue(reason="combo bolus without a usable timestamp", record_id=t.id)
            logger.warning("Skipping combo bolus", extra={"issue": issue.describe()})
            if issues is not None:
                issues.append(issue)
            continue
        if t.relative is not None:
            rate = t.relative
        else:
            extended_units = (t.enteredinsulin or 0) * (t.splitExt or 0) / 100
            rate = extended_units / (t.duration / 60)
        if rate <= 0:
            continue
        extensions.append(
            ComboExtension(treatment=t, start=start, end=start + int(t.duration * MS_PER_MINUTE), rate=rate)
        )
    extensions.sort(key=lambda ext: ext.start)
    return extensions


def _active_temp(resolved: Sequence[ResolvedTempBasal], mills: int) -> Optional[ResolvedTempBasal]:
    for temp in reversed(resolved):
        if temp.active_at(mills):
            return temp
    return None


def _active_combos(extensions: Sequence[ComboExtension], mills: int) -> list[ComboExtension]:
    return [ext for ext in extensions if ext.active_at(mills)]


def basal_rate_at(treatments: Sequence[Treatment], profile: ActiveProfile, at: int) -> BasalRateAt:
    scheduled = profile.basal_rate_at(at)
    temp = _active_temp(resolve_temp_basals(treatments), at)
    combos = _active_combos(combo_extensions(treatments), at)

    tempbasal = temp.rate(scheduled) if temp else None
    combo_rate = sum(ext.rate for ext in combos)
    base = tempbasal if tempbasal is not None else scheduled
    return BasalRateAt(
        basal=scheduled,
        tempbasal=tempbasal,
        combobolusbasal=round(combo_rate, 3),
        totalbasal=round(base + combo_rate, 3),
        treatment=_ref(temp.treatment, temp.start) if temp else None,
        combobolustreatment=_ref(combos[-1].treatment, combos[-1].start) if combos else None,
    )


def _append_segment(segments: list[BasalSegment], segment: BasalSegment) -> None:
    if segments:
        last = segments[-1]
        if (
            last.end == segment.start
            and last.kind == segment.kind
            and last.rate == segment.rate
            and last.treatment_id == segment.treatment_id
            and last.scheduled_rate == segment.scheduled_rate
        ):
            segments[-1] = last.model_copy(update={"end": segment.end})
            return
    segments.append(segment)


def basal_segments(
    treatments: Sequence[Treatment],
    profile: ActiveProfile,
    start: int,
    end: int,
    issues: Optional[list[InputIssue]] = None,
) -> tuple[list[BasalSegment], list[ResolvedTempBasal]]:
    """Piecewise-constant delivery over [start, end): base (scheduled or temp) plus combo segments."""
    resolved = resolve_temp_basals(treatments, issues)
    extensions = combo_extensions(treatments, issues)

    boundaries = {start, end}
    boundaries.update(profile.schedule_boundaries(start, end))
    for temp in resolved:
        boundaries.update((temp.start, temp.effective_end))
    for ext in extensions:
        boundaries.update((ext.start, ext.end))
    points = sorted(b for b in boundaries if start <= b <= end)

    segments: list[BasalSegment] = []
    # truncated temps never overlap, so only the latest started one can be active
    temp_cursor = -1
    ext_cursor = 0
    running: list[ComboExtension] = []
    for a, b in zip(points, points[1:]):
        if b <= a:
            continue
        while temp_cursor + 1 < len(resolved) and resolved[temp_cursor + 1].start <= a:
            temp_cursor += 1
        while ext_cursor < len(extensions) and extensions[ext_cursor].start <= a:
            running.append(extensions[ext_cursor])
            ext_cursor += 1
        running = [ext for ext in running if ext.end > a]

        scheduled = profile.basal_rate_at(a)
        temp = resolved[temp_cursor] if temp_cursor >= 0 else None
        if temp is not None and temp.active_at(a):
            _append_segment(
                segments,
                BasalSegment(
                    start=a,
                    end=b,
                    rate=temp.rate(scheduled),
                    kind="temp",
                    treatment_id=temp.treatment.id,
                    scheduled_rate=scheduled,
                ),
            )
        else:
            _append_segment(
                segments,
                BasalSegment(start=a, end=b, rate=scheduled, kind="scheduled", scheduled_rate=scheduled),
            )
        for ext in running:
            _append_segment(
                segments,
                BasalSegment(
                    start=a,
                    end=b,
                    rate=ext.rate,
                    kind="combo",
                    treatment_id=ext.treatment.id,
                    scheduled_rate=scheduled,
                ),
            )
    return segments, resolved


def calculate_basal_delivery(
    treatments: Sequence[Treatment],
    profile: ActiveProfile,
    start: int,
    end: int,
) -> TempBasalResult:
    """Integrate delivered basal insulin over [start, end) and decompose it by source."""
    if end <= start:
        return TempBasalResult(start=start, end=end)

    segments, resolved = basal_segments(treatments, profile, start, end)

    totals = {"temp": 0.0, "scheduled": 0.0, "combo": 0.0}
    for segment in segments:
        totals[segment.kind] += segment.rate * (segment.end - segment.start) / MS_PER_HOUR

    in_window = [t for t in resolved if t.start < end and (t.original_end > start or t.start >= start)]
    truncations = [
        Truncation(
            treatment_id=t.treatment.id,
            cuttedby=t.cuttedby,
            original_end=t.original_end,
            effective_end=t.effective_end,
        )
        for t in in_window
        if t.effective_end < t.original_end
    ]
    linkage = [
        TempBasalLink(treatment_id=t.treatment.id, predecessor=t.predecessor, successor=t.successor)
        for t in in_window
    ]

    tempbasal = round(totals["temp"], 3)
    scheduledbasal = round(totals["scheduled"], 3)
    combobolusbasal = round(totals["combo"], 3)
    logger.debug(
        "Basal delivery resolved",
        extra={"segments": len(segments), "truncations": len(truncations), "window_ms": end - start},
    )
    return TempBasalResult(
        totalbasal=round(totals["temp"] + totals["scheduled"] + totals["combo"], 3),
        tempbasal=tempbasal,
        scheduledbasal=scheduledbasal,
        combobolusbasal=combobolusbasal,
        start=start,
        end=end,
        segments=segments,
        truncations=truncations,
        linkage=linkage,
    )


__all__ = [
    "ComboExtension",
    "ResolvedTempBasal",
    "basal_rate_at",
    "basal_segments",
    "calculate_basal_delivery",
    "combo_extensions",
    "resolve_temp_basals",
]
