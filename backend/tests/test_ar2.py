import asyncio
import math

import pytest

from glucoscope.core.settings import AnalyticsConfig
from glucoscope.models.entries import GlucoseReading
from glucoscope.models.forecast import Ar2State
from glucoscope.services.ar2 import (
    Ar2StateStore,
    apply_reading,
    average_loss,
    build_state,
    forecast,
    forecast_from_readings,
    generate_cone,
)

T0 = 1_700_006_400_000
MIN = 60_000


@pytest.fixture
def config():
    return AnalyticsConfig()


def readings(values, start=T0, step_minutes=5):
    return [GlucoseReading(mills=start + i * step_minutes * MIN, sgv=v) for i, v in enumerate(values)]


def test_phases_progress_from_idle(config):
    state = Ar2State()
    assert state.phase == "idle"
    state = apply_reading(state, GlucoseReading(mills=T0, sgv=120), config)
    assert state.phase == "warmed_up"
    state = apply_reading(state, GlucoseReading(mills=T0 + 5 * MIN, sgv=125), config)
    assert state.phase == "forecasting"
    assert state.prev == pytest.approx(math.log(120 / 140))
    assert state.curr == pytest.approx(math.log(125 / 140))


def test_readings_within_half_interval_are_averaged(config):
    state = build_state(
        [GlucoseReading(mills=T0, sgv=100), GlucoseReading(mills=T0 + 2 * MIN, sgv=120)], config
    )
    assert state.phase == "warmed_up"
    assert state.bucket_values == [100, 120]
    assert state.curr == pytest.approx(math.log(110 / 140))


def test_rising_forecast_points(config):
    series = readings([100, 110, 120])
    props = forecast_from_readings(series, T0 + 11 * MIN, config)

    assert props.phase == "forecasting"
    assert [p.mgdl for p in props.predicted] == [128, 134, 139]
    assert [p.mills for p in props.predicted] == [T0 + 15 * MIN, T0 + 20 * MIN, T0 + 25 * MIN]
    assert all(p.color == "cyan" for p in props.predicted)
    assert props.display_line == "BG 15m: 139 mg/dl"
    assert props.level is None
    assert props.event_name == ""


def test_fast_rise_is_urgent_high(config):
    props = forecast_from_readings(readings([200, 240]), T0 + 6 * MIN, config)
    assert [p.mgdl for p in props.predicted] == [273, 298, 316]
    assert props.level == "urgent"
    assert props.event_name == "High"
    assert props.avg_loss > 0.10


def test_fast_fall_is_urgent_low(config):
    props = forecast_from_readings(readings([100, 80]), T0 + 6 * MIN, config)
    assert [p.mgdl for p in props.predicted] == [68, 61, 57]
    assert props.level == "urgent"
    assert props.event_name == "Low"


def test_longer_horizon_uses_twenty_minute_point_for_events():
    config = AnalyticsConfig(ar2_horizon_points=6)
    props = forecast_from_readings(readings([200, 240]), T0 + 6 * MIN, config)
    assert len(props.predicted) == 6
    assert props.event_name == "High"


def test_predictions_clamped_to_sensor_range(config):
    props = forecast_from_readings(readings([60, 40]), T0 + 6 * MIN, config)
    assert min(p.mgdl for p in props.predicted) >= 36
    props = forecast_from_readings(readings([300, 390]), T0 + 6 * MIN, config)
    assert max(p.mgdl for p in props.predicted) <= 400


def test_stale_forecast_resets_to_idle(config):
    state = build_state(readings([100, 110, 120]), config)
    new_state, props = forecast(state, T0 + 10 * MIN + 16 * MIN, config)
    assert props.predicted == []
    assert new_state.phase == "idle"
    assert new_state.prev is None


def test_gap_resets_state_and_uses_only_post_gap_data(config):
    before = readings([100, 110, 120])
    after = readings([180, 185], start=T0 + 10 * MIN + 30 * MIN)
    state = build_state(before + after[:1], config)
    assert state.phase == "warmed_up"
    assert state.prev is None

    state = build_state(before + after, config)
    assert state.phase == "forecasting"
    assert state.prev == pytest.approx(math.log(180 / 140))
    assert state.curr == pytest.approx(math.log(185 / 140))


def test_warmed_up_state_has_no_forecast(config):
    props = forecast_from_readings(readings([120]), T0 + MIN, config)
    assert props.phase == "warmed_up"
    assert props.predicted == []


def test_out_of_order_and_implausible_readings_ignored(config):
    state = build_state(readings([100, 110]), config)
    assert apply_reading(state, GlucoseReading(mills=T0, sgv=300), config) == state
    assert apply_reading(state, GlucoseReading(mills=T0 + 10 * MIN, sgv=20), config) == state


def test_average_loss_weighting():
    assert average_loss([]) == 0
    state = build_state(readings([100, 110, 120]), AnalyticsConfig())
    _, props = forecast(state, T0 + 11 * MIN, AnalyticsConfig())
    expected = sum(0.5 * math.log10(p.mgdl / 120) ** 2 for p in props.predicted)
    assert props.avg_loss == pytest.approx(expected)


def test_cone_brackets_forecast(config):
    state = build_state(readings([100, 110, 120]), config)
    cone = generate_cone(state, T0 + 11 * MIN, config)
    assert len(cone) == 26
    lower, upper = cone[0], cone[1]
    assert lower.mills == upper.mills
    assert lower.mgdl < upper.mgdl
    assert generate_cone(state, T0 + 11 * MIN, config, cone_factor=0)[0].mgdl == 128


@pytest.mark.asyncio
async def test_state_store_isolated_per_account(config):
    store = Ar2StateStore(config)
    await store.update_many("alice", readings([100, 110, 120]))
    assert store.get("alice").phase == "forecasting"
    assert store.get("bob").phase == "idle"

    props = await store.forecast("alice", T0 + 11 * MIN)
    assert len(props.predicted) == 3
    assert (await store.forecast("bob", T0 + 11 * MIN)).predicted == []

    await store.reset("alice")
    assert store.get("alice").phase == "idle"


@pytest.mark.asyncio
async def test_concurrent_updates_for_one_account_are_not_lost(config):
    store = Ar2StateStore(config)
    series = readings([100 + i for i in range(20)])
    await asyncio.gather(*(store.update("alice", r) for r in series))
    state = store.get("alice")
    assert state.last_reading_mills == series[-1].mills
    assert state.curr == pytest.approx(math.log(119 / 140))
    assert state.prev == pytest.approx(math.log(118 / 140))


@pytest.mark.asyncio
async def test_stale_forecast_through_store_resets(config):
    store = Ar2StateStore(config)
    await store.update_many("alice", readings([100, 110, 120]))
    props = await store.forecast("alice", T0 + 60 * MIN)
    assert props.predicted == []
    assert store.get("alice").phase == "idle"


@pytest.mark.asyncio
async def test_idle_accounts_are_forgotten(config):
    store = Ar2StateStore(config)
    await store.forecast("bob", T0)
    assert store.tracked_accounts() == set()

    await store.update_many("alice", readings([100, 110, 120]))
    await store.update_many("carol", readings([100, 110, 120]))
    assert store.tracked_accounts() == {"alice", "carol"}

    await store.forecast("alice", T0 + 60 * MIN)
    await store.reset("carol")
    assert store.tracked_accounts() == set()
