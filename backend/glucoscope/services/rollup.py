from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from glucoscope.core.settings import AnalyticsConfig
from glucoscope.models.entries import ActiveProfile, GlucoseReading, Treatment
from glucoscope.models.rollup import PeriodStatisticsRecord
from glucoscope.models.statistics import (
    AnalysisTime,
    GlucoseAnalytics,
    MultiPeriodStatistics,
    PeriodStatistics,
)
from glucoscope.services.basal import calculate_basal_delivery
from glucoscope.services.statistics import analyze_glucose_data, valid_readings
from glucoscope.services.store import TimeSeriesStore
from glucoscope.services.treatments import calculate_treatment_summary

logger = logging.getLogger(__name__)

MS_PER_DAY = 86_400_000
MS_PER_MINUTE = 60_000

NAMED_PERIODS = {1: "last_day", 3: "last_3_days", 7: "last_week", 30: "last_month", 90: "last_90_days"}


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def treatment_lookback_ms(config: AnalyticsConfig, profile: Optional[ActiveProfile] = None) -> int:
    dia_hours = profile.dia if profile is not None else config.dia_hours
    minutes = max(dia_hours * 60, config.carb_absorption_minutes + config.carb_delay_minutes)
    return int(minutes * MS_PER_MINUTE)


def compute_period(
    days: int,
    now: int,
    readings: Sequence[GlucoseReading],
    treatments: Sequence[Treatment],
    config: AnalyticsConfig,
    profile: Optional[ActiveProfile] = None,
) -> PeriodStatistics:
    """One self-contained period rollup over [now - days, now]."""
    start = now - days * MS_PER_DAY
    period_readings = [r for r in readings if start <= r.mills <= now]
    period_treatments = [
        t for t in treatments if t.timestamp_ms is not None and start <= t.timestamp_ms <= now
    ]
    usable = valid_readings(period_readings)
    sufficient = len(usable) >= config.min_sufficient_readings

    if sufficient:
        analytics = analyze_glucose_data(usable, period_treatments, config, start=start, end=now, now=now)
    else:
        analytics = GlucoseAnalytics(time=AnalysisTime(start=start, end=now, time_of_analysis=now))

    basal_delivery = None
    if profile is not None:
        # temp basals started during the lookback may still be running at window start
        basal_delivery = calculate_basal_delivery(treatments, profile, start, now)

    return PeriodStatistics(
        period_days=days,
        start_date=start,
        end_date=now,
        analytics=analytics,
        treatment_summary=calculate_treatment_summary(period_treatments, basal_delivery),
        has_sufficient_data=sufficient,
        entry_count=len(period_readings),
        treatment_count=len(period_treatments),
    )


class RollupCache:
    """Published rollups per account. Each publish swaps in a complete snapshot."""

    def __init__(self) -> None:
        self._snapshots: dict[str, dict[int, PeriodStatistics]] = {}
        self._last_updated: dict[str, int] = {}

    def publish(self, account: str, periods: Sequence[PeriodStatistics], updated_at: int) -> None:
        snapshot = dict(self._snapshots.get(account, {}))
        snapshot.update({p.period_days: p for p in periods})
        self._snapshots[account] = snapshot
        self._last_updated[account] = updated_at

    def get(self, account: str, period_days: int) -> Optional[PeriodStatistics]:
        return self._snapshots.get(account, {}).get(period_days)

    def get_all(self, account: str) -> dict[int, PeriodStatistics]:
        return dict(self._snapshots.get(account, {}))

    def last_updated(self, account: str) -> Optional[int]:
        return self._last_updated.get(account)

    def invalidate(self, account: str, reading_mills: int) -> list[int]:
        """Drop every cached period whose window starts at or before the new reading."""
        snapshot = self._snapshots.get(account)
        if not snapshot:
            return []
        dropped = [days for days, stats in snapshot.items() if stats.start_date <= reading_mills]
        if dropped:
            self._snapshots[account] = {d: s for d, s in snapshot.items() if d not in dropped}
            logger.debug("Rollup cache invalidated", extra={"account": account, "periods": dropped})
        return dropped


class RollupRepository:
    """Persists PeriodStatistics; falls back to a dict when no database is configured."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None) -> None:
        self._session_factory = session_factory
        self._memory: dict[tuple[str, int], dict] = {}

    async def save(self, account: str, stats: PeriodStatistics) -> None:
        payload = stats.model_dump(mode="json", by_alias=True)
        if self._session_factory is None:
            self._memory[(account, stats.period_days)] = payload
            return
        async with self._session_factory() as session:
            await session.merge(
                PeriodStatisticsRecord(
                    account=account,
                    period_days=stats.period_days,
                    start_mills=stats.start_date,
                    end_mills=stats.end_date,
                    payload=payload,
                )
            )
            await session.commit()

    async def load(self, account: str, period_days: int) -> Optional[PeriodStatistics]:
        if self._session_factory is None:
            payload = self._memory.get((account, period_days))
        else:
            async with self._session_factory() as session:
                stmt = select(PeriodStatisticsRecord).where(
                    PeriodStatisticsRecord.account == account,
                    PeriodStatisticsRecord.period_days == period_days,
                )
                record = (await session.execute(stmt)).scalar_one_or_none()
                payload = record.payload if record else None
        return PeriodStatistics.model_validate(payload) if payload else None


class RollupOrchestrator:
    def __init__(
        self,
        store: TimeSeriesStore,
        config: AnalyticsConfig,
        cache: Optional[RollupCache] = None,
        repository: Optional[RollupRepository] = None,
    ) -> None:
        self.store = store
        self.config = config
        self.cache = cache or RollupCache()
        self.repository = repository

    async def compute(
        self,
        account: str,
        now: Optional[int] = None,
        profile: Optional[ActiveProfile] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> MultiPeriodStatistics:
        self.config.validate_config()
        if profile is not None:
            profile.validate_profile()
        now = now if now is not None else _now_ms()

        if cancel is not None and cancel.is_set():
            raise asyncio.CancelledError("rollup cancelled before fetch")

        widest = max(self.config.period_days)
        window_start = now - widest * MS_PER_DAY
        lookback = treatment_lookback_ms(self.config, profile)
        started = time.perf_counter()
        readings, treatments = await asyncio.gather(
            self.store.fetch_readings(account, window_start, now),
            self.store.fetch_treatments(account, window_start - lookback, now),
        )

        if cancel is not None and cancel.is_set():
            raise asyncio.CancelledError("rollup cancelled after fetch")

        dated = [t for t in treatments if t.timestamp_ms is not None]
        if len(dated) != len(treatments):
            logger.warning(
                "Skipping treatments without a usable timestamp",
                extra={"account": account, "skipped": len(treatments) - len(dated)},
            )
        periods = [
            compute_period(days, now, readings, dated, self.config, profile)
            for days in sorted(set(self.config.period_days))
        ]
        self.cache.publish(account, periods, now)
        if self.repository is not None:
            for period in periods:
                await self.repository.save(account, period)

        logger.info(
            "Rollup computed",
            extra={
                "account": account,
                "periods": [p.period_days for p in periods],
                "readings": len(readings),
                "treatments": len(treatments),
                "elapsed_ms": round((time.perf_counter() - started) * 1000, 1),
            },
        )
        return assemble(periods, now)


def assemble(periods: Sequence[PeriodStatistics], last_updated: int) -> MultiPeriodStatistics:
    result = MultiPeriodStatistics(periods={p.period_days: p for p in periods}, last_updated=last_updated)
    for period in periods:
        name = NAMED_PERIODS.get(period.period_days)
        if name:
            setattr(result, name, period)
    return result


__all__ = [
    "RollupCache",
    "RollupOrchestrator",
    "RollupRepository",
    "assemble",
    "compute_period",
    "treatment_lookback_ms",
]
