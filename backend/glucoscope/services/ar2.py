from __future__ import annotations

import asyncio
import logging
import math
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable, Optional

import numpy as np

from glucoscope.core.settings import AnalyticsConfig
from glucoscope.models.entries import GlucoseReading
from glucoscope.models.forecast import Ar2Properties, Ar2State, ForecastPoint

logger = logging.getLogger(__name__)

BG_REF = 140.0
BG_MIN = 36
BG_MAX = 400
LOSS_REF = 120.0
WARN_THRESHOLD = 0.05
URGENT_THRESHOLD = 0.10
AR2_COLOR = "cyan"
CONE_STEPS = (0.020, 0.041, 0.061, 0.081, 0.099, 0.116, 0.132, 0.146, 0.159, 0.171, 0.182, 0.192, 0.201)
EVENT_POINT_INDEX = 3
DISPLAY_POINT_INDEX = 2


def _log_ratio(mgdl: float) -> float:
    return math.log(mgdl / BG_REF)


def _point(mills: int, log_value: float, cone: float = 0.0) -> ForecastPoint:
    mgdl = int(round(BG_REF * math.exp(log_value + cone)))
    return ForecastPoint(mills=mills, mgdl=max(BG_MIN, min(BG_MAX, mgdl)), color=AR2_COLOR)


def _step(prev: float, curr: float, coefficients: tuple[float, float]) -> tuple[float, float]:
    return curr, coefficients[0] * prev + coefficients[1] * curr


def average_loss(points: list[ForecastPoint]) -> float:
    size = min(len(points) - 1, 6)
    if size <= 0:
        return 0.0
    loss = sum((1.0 / size) * math.log10(points[j].mgdl / LOSS_REF) ** 2 for j in range(size + 1))
    return loss if math.isfinite(loss) else 0.0


def apply_reading(state: Ar2State, reading: GlucoseReading, config: AnalyticsConfig) -> Ar2State:
    """
    Fold one reading into the state. Readings within half an interval of the
    open bucket are averaged into it; a reading after a stale gap starts over.
    """
    if reading.sgv < BG_MIN or not math.isfinite(reading.sgv):
        return state
    if state.last_reading_mills is not None and reading.mills <= state.last_reading_mills:
        logger.debug("Ignoring out-of-order or duplicate reading", extra={"mills": reading.mills})
        return state

    if state.last_reading_mills is not None and reading.mills - state.last_reading_mills > config.ar2_stale_ms:
        logger.info("AR2 state reset after gap", extra={"gap_ms": reading.mills - state.last_reading_mills})
        state = Ar2State()

    half_interval = config.nominal_interval_ms / 2
    if state.bucket_mills is None:
        return state.model_copy(
            update={
                "phase": "warmed_up",
                "prev": None,
                "curr": _log_ratio(reading.sgv),
                "bucket_mills": reading.mills,
                "bucket_values": [reading.sgv],
                "last_reading_mills": reading.mills,
            }
        )

    if reading.mills - state.bucket_mills <= half_interval:
        values = [*state.bucket_values, reading.sgv]
        return state.model_copy(
            update={
                "curr": _log_ratio(float(np.mean(values))),
                "bucket_values": values,
                "last_reading_mills": reading.mills,
            }
        )

    return state.model_copy(
        update={
            "phase": "forecasting",
            "prev": state.curr,
            "curr": _log_ratio(reading.sgv),
            "bucket_mills": reading.mills,
            "bucket_values": [reading.sgv],
            "last_reading_mills": reading.mills,
        }
    )


def is_stale(state: Ar2State, now: int, config: AnalyticsConfig) -> bool:
    return state.last_reading_mills is None or now - state.last_reading_mills > config.ar2_stale_ms


def _check_forecast(props: Ar2Properties, config: AnalyticsConfig) -> None:
    """
    Level from avg_loss; High/Low event from the 20 minute point. The default
    3 point horizon stops at 15 minutes, so the last predicted point is judged
    instead and an event can still be raised without a 4th point.
    """
    if props.avg_loss > URGENT_THRESHOLD:
        props.level = "urgent"
    elif props.avg_loss > WARN_THRESHOLD:
        props.level = "warn"

    if props.level and props.predicted:
        index = EVENT_POINT_INDEX if len(props.predicted) > EVENT_POINT_INDEX else len(props.predicted) - 1
        event_mgdl = props.predicted[index].mgdl
        if event_mgdl > config.thresholds.high:
            props.event_name = "High"
        elif event_mgdl < config.thresholds.low:
            props.event_name = "Low"


def forecast(state: Ar2State, now: int, config: AnalyticsConfig) -> tuple[Ar2State, Ar2Properties]:
    """Project the state forward. Returns the updated state and the forecast properties."""
    if is_stale(state, now, config):
        if state.phase != "idle":
            logger.info("AR2 state stale; resetting to idle", extra={"last": state.last_reading_mills})
        return Ar2State(), Ar2Properties()
    if state.phase != "forecasting" or state.prev is None or state.curr is None:
        return state, Ar2Properties(phase=state.phase)

    forecast_time = state.bucket_mills
    prev, curr = state.prev, state.curr
    points: list[ForecastPoint] = []
    for _ in range(config.ar2_horizon_points):
        forecast_time += config.nominal_interval_ms
        prev, curr = _step(prev, curr, config.ar2_coefficients)
        points.append(_point(forecast_time, curr))

    props = Ar2Properties(predicted=points, avg_loss=average_loss(points), phase="forecasting")
    _check_forecast(props, config)
    if len(points) > DISPLAY_POINT_INDEX:
        props.display_line = f"BG 15m: {points[DISPLAY_POINT_INDEX].mgdl} mg/dl"

    new_state = state.model_copy(update={"forecast_time": state.bucket_mills, "predicted": points})
    return new_state, props


def generate_cone(state: Ar2State, now: int, config: AnalyticsConfig, cone_factor: float = 2.0) -> list[ForecastPoint]:
    """Lower/upper uncertainty band around the AR2 path, one pair per cone step."""
    if is_stale(state, now, config) or state.phase != "forecasting" or state.prev is None:
        return []
    forecast_time = state.bucket_mills
    prev, curr = state.prev, state.curr
    cone: list[ForecastPoint] = []
    for step in CONE_STEPS:
        forecast_time += config.nominal_interval_ms
        prev, curr = _step(prev, curr, config.ar2_coefficients)
        if cone_factor > 0:
            cone.append(_point(forecast_time, curr, -cone_factor * step))
        cone.append(_point(forecast_time, curr, cone_factor * step))
    return cone


def build_state(readings: Iterable[GlucoseReading], config: AnalyticsConfig) -> Ar2State:
    state = Ar2State()
    for reading in sorted(readings, key=lambda r: r.mills):
        state = apply_reading(state, reading, config)
    return state


def forecast_from_readings(
    readings: Iterable[GlucoseReading], now: int, config: AnalyticsConfig
) -> Ar2Properties:
    _, props = forecast(build_state(readings, config), now, config)
    return props


class Ar2StateStore:
    """
    Per-account AR2 state. Writers for one account are serialized; accounts never
    share a lock. An account whose state falls back to idle is forgotten, lock
    included, once nobody is waiting on it.
    """

    def __init__(self, config: AnalyticsConfig) -> None:
        self._config = config
        self._states: dict[str, Ar2State] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def _locked(self, account: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(account, asyncio.Lock())
        self._users[account] = self._users.get(account, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[account] -= 1
            if not self._users[account]:
                del self._users[account]
                if account not in self._states:
                    self._locks.pop(account, None)

    def _put(self, account: str, state: Ar2State) -> None:
        if state.last_reading_mills is None:
            self._states.pop(account, None)
        else:
            self._states[account] = state

    def get(self, account: str) -> Ar2State:
        return self._states.get(account, Ar2State())

    def tracked_accounts(self) -> set[str]:
        return set(self._states) | set(self._locks)

    async def update(self, account: str, reading: GlucoseReading) -> Ar2State:
        async with self._locked(account):
            state = apply_reading(self.get(account), reading, self._config)
            self._put(account, state)
            return state

    async def update_many(self, account: str, readings: Iterable[GlucoseReading]) -> Ar2State:
        async with self._locked(account):
            state = self.get(account)
            for reading in sorted(readings, key=lambda r: r.mills):
                state = apply_reading(state, reading, self._config)
            self._put(account, state)
            return state

    async def forecast(self, account: str, now: int) -> Ar2Properties:
        async with self._locked(account):
            state, props = forecast(self.get(account), now, self._config)
            self._put(account, state)
            return props

    async def reset(self, account: str) -> None:
        async with self._locked(account):
            self._states.pop(account, None)


__all__ = [
    "Ar2StateStore",
    "apply_reading",
    "average_loss",
    "build_state",
    "forecast",
    "forecast_from_readings",
    "generate_cone",
    "is_stale",
]
