import asyncio

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from glucoscope.core.db import Base
from glucoscope.core.errors import ConfigurationError
from glucoscope.core.settings import AnalyticsConfig
from glucoscope.models.entries import ActiveProfile, GlucoseReading, ScheduleEntry, Treatment
from glucoscope.models.statistics import GlycemicThresholds
from glucoscope.services.rollup import (
    RollupCache,
    RollupOrchestrator,
    RollupRepository,
    compute_period,
    treatment_lookback_ms,
)
from glucoscope.services.store import InMemoryStore, StoreError

NOW = 1_700_006_400_000 + 12 * 3_600_000
MIN = 60_000
DAY = 24 * 60 * MIN


def readings_between(start, end, value=130.0):
    return [GlucoseReading(mills=m, sgv=value) for m in range(start, end + 1, 5 * MIN)]


@pytest.fixture
def config():
    return AnalyticsConfig()


@pytest.fixture
def store():
    store = InMemoryStore()
    store.add_readings("alice", readings_between(NOW - 2 * DAY, NOW))
    store.add_treatments(
        "alice",
        [
            Treatment(_id="m1", eventType="Meal Bolus", mills=NOW - 2 * 60 * MIN, insulin=4, carbs=50),
            Treatment(_id="m2", eventType="Meal Bolus", mills=NOW - 30 * 60 * MIN, insulin=6, carbs=70),
        ],
    )
    return store


@pytest.mark.asyncio
async def test_rollup_computes_every_period(store, config):
    cache = RollupCache()
    result = await RollupOrchestrator(store, config, cache).compute("alice", now=NOW)

    assert set(result.periods) == {1, 3, 7, 30, 90}
    day = result.last_day
    assert day.has_sufficient_data
    assert day.entry_count == 289
    assert day.start_date == NOW - DAY
    assert day.analytics.basic_stats.mean == 130
    assert day.treatment_summary.totals.food.carbs == 50
    assert result.last_3_days.treatment_summary.totals.food.carbs == 120
    assert result.last_week.entry_count >= result.last_3_days.entry_count >= day.entry_count
    assert result.last_updated == NOW

    assert cache.get("alice", 7) == result.last_week
    assert cache.last_updated("alice") == NOW


@pytest.mark.asyncio
async def test_single_fetch_per_invocation(store, config):
    await RollupOrchestrator(store, config).compute("alice", now=NOW)
    assert store.fetch_count == 1


@pytest.mark.asyncio
async def test_insufficient_data_is_flagged_with_zero_analytics(config):
    store = InMemoryStore()
    store.add_readings("bob", readings_between(NOW - 20 * MIN, NOW))
    store.add_treatments("bob", [Treatment(_id="c", eventType="Carbs", mills=NOW - 10 * MIN, carbs=15)])
    result = await RollupOrchestrator(store, config).compute("bob", now=NOW)

    day = result.last_day
    assert not day.has_sufficient_data
    assert day.entry_count == 5
    assert day.analytics.basic_stats.count == 0
    assert day.analytics.glycemic_variability.mage == 0
    assert day.treatment_summary.totals.food.carbs == 15
    assert day.treatment_count == 1


@pytest.mark.asyncio
async def test_cancel_before_fetch(store, config):
    cancel = asyncio.Event()
    cancel.set()
    cache = RollupCache()
    with pytest.raises(asyncio.CancelledError):
        await RollupOrchestrator(store, config, cache).compute("alice", now=NOW, cancel=cancel)
    assert store.fetch_count == 0
    assert cache.get_all("alice") == {}


class CancellingStore(InMemoryStore):
    def __init__(self, cancel):
        super().__init__()
        self.cancel = cancel

    async def fetch_readings(self, account, start, end):
        self.cancel.set()
        return await super().fetch_readings(account, start, end)


@pytest.mark.asyncio
async def test_cancel_at_fetch_boundary_publishes_nothing(config):
    cancel = asyncio.Event()
    store = CancellingStore(cancel)
    store.add_readings("alice", readings_between(NOW - DAY, NOW))
    cache = RollupCache()
    with pytest.raises(asyncio.CancelledError):
        await RollupOrchestrator(store, config, cache).compute("alice", now=NOW, cancel=cancel)
    assert cache.get_all("alice") == {}


class FailingStore(InMemoryStore):
    async def fetch_readings(self, account, start, end):
        raise StoreError("store unavailable")


@pytest.mark.asyncio
async def test_fetch_failure_propagates(config):
    cache = RollupCache()
    with pytest.raises(StoreError):
        await RollupOrchestrator(FailingStore(), config, cache).compute("alice", now=NOW)
    assert cache.last_updated("alice") is None


@pytest.mark.asyncio
async def test_invalid_configuration_fails_fast(store):
    config = AnalyticsConfig(thresholds=GlycemicThresholds(severe_low=80))
    with pytest.raises(ConfigurationError):
        await RollupOrchestrator(store, config).compute("alice", now=NOW)
    assert store.fetch_count == 0


@pytest.mark.asyncio
async def test_profile_basal_counted_in_summary(store, config):
    profile = ActiveProfile(dia=3, basal=[ScheduleEntry(time="00:00", value=0.5)])
    result = await RollupOrchestrator(store, config).compute("alice", now=NOW, profile=profile)
    summary = result.last_day.treatment_summary
    assert summary.totals.insulin.basal == pytest.approx(12.0)
    assert summary.totals.insulin.bolus == 4
    assert summary.basal_percentage == 75.0


def test_temp_basal_running_into_window_is_counted(config):
    profile = ActiveProfile(dia=3, basal=[ScheduleEntry(time="00:00", value=1.0)])
    running = Treatment(_id="tb", eventType="Temp Basal", mills=NOW - DAY - 30 * MIN, duration=60, absolute=3.0)
    period = compute_period(1, NOW, [], [running], config, profile)
    # 30 min at 3 U/h inside the window, the rest scheduled
    assert period.treatment_summary.totals.insulin.basal == pytest.approx(1.5 + 23.5)
    # the temp itself started before the window
    assert period.treatment_count == 0


def test_treatment_lookback(config):
    assert treatment_lookback_ms(config) == 200 * MIN
    assert treatment_lookback_ms(config, ActiveProfile(dia=5)) == 300 * MIN


@pytest.mark.asyncio
async def test_cache_invalidation_drops_covering_periods(store, config):
    cache = RollupCache()
    await RollupOrchestrator(store, config, cache).compute("alice", now=NOW)

    dropped = cache.invalidate("alice", NOW - 2 * DAY)
    assert sorted(dropped) == [3, 7, 30, 90]
    assert set(cache.get_all("alice")) == {1}
    assert cache.invalidate("nobody", NOW) == []


@pytest.mark.asyncio
async def test_in_memory_repository_round_trip(store, config):
    repository = RollupRepository()
    result = await RollupOrchestrator(store, config, repository=repository).compute("alice", now=NOW)
    loaded = await repository.load("alice", 1)
    assert loaded == result.last_day
    assert await repository.load("alice", 2) is None


@pytest.mark.asyncio
async def test_sqlalchemy_repository(tmp_path, store, config):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'rollups.db'}")
    async with engine.begin() as conn:
        from glucoscope.models import rollup  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)
    repository = RollupRepository(async_sessionmaker(engine, expire_on_commit=False))
    try:
        result = await RollupOrchestrator(store, config, repository=repository).compute("alice", now=NOW)
        loaded = await repository.load("alice", 3)
        assert loaded.entry_count == result.last_3_days.entry_count
        assert loaded.analytics.basic_stats.mean == 130

        # saving again replaces the row
        await repository.save("alice", result.last_day)
        assert (await repository.load("alice", 1)).end_date == NOW
    finally:
        await engine.dispose()
