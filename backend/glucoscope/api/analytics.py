from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import lru_cache
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, Query

from glucoscope.core.settings import AnalyticsConfig, Settings, get_settings
from glucoscope.models.entries import ActiveProfile
from glucoscope.models.forecast import Ar2Properties
from glucoscope.models.iob import CobResult, IobResult, TempBasalResult
from glucoscope.models.statistics import (
    AveragedStats,
    CamelModel,
    DistributionDataPoint,
    MultiPeriodStatistics,
)
from glucoscope.services.ar2 import Ar2StateStore
from glucoscope.services.basal import calculate_basal_delivery
from glucoscope.services.iob import calculate_cob, calculate_iob
from glucoscope.services.rollup import (
    MS_PER_DAY,
    RollupCache,
    RollupOrchestrator,
    RollupRepository,
    assemble,
    treatment_lookback_ms,
)
from glucoscope.services.statistics import calculate_averaged_stats, calculate_glucose_distribution
from glucoscope.services.store import InMemoryStore, NightscoutStore, TimeSeriesStore

logger = logging.getLogger(__name__)

router = APIRouter()

AR2_HISTORY_MS = 60 * 60 * 1000


class IobCobResponse(CamelModel):
    iob: IobResult
    cob: CobResult


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def get_config(settings: Settings = Depends(get_settings)) -> AnalyticsConfig:
    return settings.analytics


_local_store = InMemoryStore()


async def get_store(settings: Settings = Depends(get_settings)) -> AsyncIterator[TimeSeriesStore]:
    if not settings.store.base_url:
        yield _local_store
        return
    store = NightscoutStore(
        base_url=str(settings.store.base_url),
        token=settings.store.token,
        api_secret=settings.store.api_secret,
        timeout_seconds=settings.store.timeout_seconds,
    )
    try:
        yield store
    finally:
        await store.aclose()


@lru_cache(maxsize=1)
def get_rollup_cache() -> RollupCache:
    return RollupCache()


@lru_cache(maxsize=1)
def get_rollup_repository() -> RollupRepository:
    from glucoscope.core.db import get_session_factory

    return RollupRepository(get_session_factory())


@lru_cache(maxsize=1)
def get_ar2_store() -> Ar2StateStore:
    return Ar2StateStore(get_settings().analytics)


async def _profile(store: TimeSeriesStore, account: str, config: AnalyticsConfig) -> ActiveProfile:
    fetch_profile = getattr(store, "fetch_profile", None)
    profile = await fetch_profile(account) if fetch_profile else None
    return profile or ActiveProfile(dia=config.dia_hours)


async def _drop_stale_rollups(store: TimeSeriesStore, account: str, cache: RollupCache) -> None:
    """Invalidate cached rollups when the store holds a reading newer than the last rollup."""
    last_updated = cache.last_updated(account)
    latest_reading_mills = getattr(store, "latest_reading_mills", None)
    if last_updated is None or latest_reading_mills is None:
        return
    newest = await latest_reading_mills(account)
    if newest is not None and newest > last_updated:
        dropped = cache.invalidate(account, newest)
        logger.info("Cached rollups outdated", extra={"account": account, "periods": dropped})


@router.get("/{account}/statistics", response_model=MultiPeriodStatistics, summary="Multi-period rollup")
async def statistics(
    account: str,
    refresh: bool = Query(False, description="Recompute even when a cached rollup exists"),
    store: TimeSeriesStore = Depends(get_store),
    config: AnalyticsConfig = Depends(get_config),
    cache: RollupCache = Depends(get_rollup_cache),
    repository: RollupRepository = Depends(get_rollup_repository),
) -> MultiPeriodStatistics:
    subscribe = getattr(store, "subscribe", None)
    if subscribe is not None:
        subscribe(cache.invalidate)
    await _drop_stale_rollups(store, account, cache)

    cached = cache.get_all(account)
    if not refresh and all(days in cached for days in config.period_days):
        return assemble([cached[d] for d in sorted(config.period_days)], cache.last_updated(account) or 0)

    profile = await _profile(store, account, config)
    orchestrator = RollupOrchestrator(store, config, cache=cache, repository=repository)
    return await orchestrator.compute(account, profile=profile)


@router.get("/{account}/iob", response_model=IobCobResponse, summary="Insulin and carbs on board")
async def iob(
    account: str,
    at: Optional[int] = Query(None, description="Reference instant (epoch ms); defaults to now"),
    store: TimeSeriesStore = Depends(get_store),
    config: AnalyticsConfig = Depends(get_config),
) -> IobCobResponse:
    at_mills = at if at is not None else _now_ms()
    profile = await _profile(store, account, config)
    treatments = await store.fetch_treatments(account, at_mills - treatment_lookback_ms(config, profile), at_mills)
    return IobCobResponse(
        iob=calculate_iob(treatments, at_mills, profile, config),
        cob=calculate_cob(treatments, at_mills, profile, config),
    )


@router.get("/{account}/basal", response_model=TempBasalResult, summary="Delivered basal over a window")
async def basal(
    account: str,
    start: int = Query(..., description="Window start (epoch ms)"),
    end: int = Query(..., description="Window end (epoch ms)"),
    store: TimeSeriesStore = Depends(get_store),
    config: AnalyticsConfig = Depends(get_config),
) -> TempBasalResult:
    profile = await _profile(store, account, config)
    # temp basals started before the window may still be running inside it
    treatments = await store.fetch_treatments(account, start - MS_PER_DAY, end)
    return calculate_basal_delivery(treatments, profile, start, end)


@router.get("/{account}/ar2", response_model=Ar2Properties, summary="AR2 short-horizon forecast")
async def ar2(
    account: str,
    now: Optional[int] = Query(None, description="Reference instant (epoch ms); defaults to now"),
    store: TimeSeriesStore = Depends(get_store),
    ar2_store: Ar2StateStore = Depends(get_ar2_store),
    cache: RollupCache = Depends(get_rollup_cache),
) -> Ar2Properties:
    now_mills = now if now is not None else _now_ms()
    readings = await store.fetch_readings(account, now_mills - AR2_HISTORY_MS, now_mills)

    last_updated = cache.last_updated(account)
    fresh = [r.mills for r in readings if last_updated is not None and r.mills > last_updated]
    if fresh:
        cache.invalidate(account, min(fresh))

    await ar2_store.update_many(account, readings)
    return await ar2_store.forecast(account, now_mills)


@router.get("/{account}/distribution", response_model=list[DistributionDataPoint], summary="Glucose histogram")
async def distribution(
    account: str,
    days: int = Query(1, ge=1, le=90),
    store: TimeSeriesStore = Depends(get_store),
) -> list[DistributionDataPoint]:
    now_mills = _now_ms()
    readings = await store.fetch_readings(account, now_mills - days * MS_PER_DAY, now_mills)
    return calculate_glucose_distribution(readings)


@router.get("/{account}/hourly", response_model=list[AveragedStats], summary="Hour-of-day statistics")
async def hourly(
    account: str,
    days: int = Query(7, ge=1, le=90),
    store: TimeSeriesStore = Depends(get_store),
) -> list[AveragedStats]:
    now_mills = _now_ms()
    readings = await store.fetch_readings(account, now_mills - days * MS_PER_DAY, now_mills)
    return calculate_averaged_stats(readings)
