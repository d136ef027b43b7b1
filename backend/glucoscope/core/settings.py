import json
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, HttpUrl, ValidationError

from glucoscope.core.errors import ConfigurationError
from glucoscope.models.statistics import GlycemicThresholds


class StoreConfig(BaseModel):
    base_url: Optional[HttpUrl] = None
    api_secret: Optional[str] = Field(default=None)
    token: Optional[str] = Field(default=None)
    timeout_seconds: int = Field(default=10, ge=1)


class DatabaseConfig(BaseModel):
    url: Optional[str] = None


class AnalyticsConfig(BaseModel):
    """Engine parameters. Passed explicitly into every computation."""

    thresholds: GlycemicThresholds = Field(default_factory=GlycemicThresholds)
    insulin_curve: Literal["bilinear", "exponential"] = "bilinear"
    insulin_peak_minutes: float = 75.0
    dia_hours: float = 3.0
    carb_curve: Literal["linear", "bilinear"] = "linear"
    carb_absorption_minutes: float = 180.0
    carb_delay_minutes: float = 20.0
    nominal_interval_minutes: float = 5.0
    gap_factor: float = 1.5
    min_episode_minutes: Optional[float] = None
    noise_baseline_mgdl: float = 20.0
    conga_hours: float = 1.0
    ar2_horizon_points: int = 3
    ar2_max_missed_intervals: int = 2
    ar2_coefficients: tuple[float, float] = (-0.723, 1.716)
    min_sufficient_readings: int = 12
    period_days: tuple[int, ...] = (1, 3, 7, 30, 90)
    glucose_units: Literal["mg/dl", "mmol"] = "mg/dl"

    @property
    def nominal_interval_ms(self) -> int:
        return int(self.nominal_interval_minutes * 60_000)

    @property
    def gap_threshold_ms(self) -> float:
        return self.gap_factor * self.nominal_interval_ms

    @property
    def episode_dwell_minutes(self) -> float:
        if self.min_episode_minutes is None:
            return self.nominal_interval_minutes
        return self.min_episode_minutes

    @property
    def ar2_stale_ms(self) -> int:
        return (self.ar2_max_missed_intervals + 1) * self.nominal_interval_ms

    def validate_config(self) -> "AnalyticsConfig":
        if self.dia_hours <= 0:
            raise ConfigurationError(f"DIA must be positive, got {self.dia_hours}")
        if self.carb_absorption_minutes <= 0:
            raise ConfigurationError(f"Carb absorption time must be positive, got {self.carb_absorption_minutes}")
        if self.carb_delay_minutes < 0:
            raise ConfigurationError("Carb delay cannot be negative")
        if self.insulin_peak_minutes <= 0:
            raise ConfigurationError("Insulin peak must be positive")
        if self.nominal_interval_minutes <= 0:
            raise ConfigurationError("Nominal sampling interval must be positive")
        if self.gap_factor < 1:
            raise ConfigurationError("Gap factor must be at least 1")
        if self.noise_baseline_mgdl <= 0 or self.conga_hours <= 0:
            raise ConfigurationError("Noise baseline and CONGA lag must be positive")
        if self.ar2_horizon_points < 1 or self.ar2_max_missed_intervals < 0:
            raise ConfigurationError("AR2 horizon must be >= 1 and missed intervals >= 0")
        if not self.period_days or any(days <= 0 for days in self.period_days):
            raise ConfigurationError("Rollup periods must be positive day counts")
        self.thresholds.validate_ordering()
        return self


class Settings(BaseModel):
    store: StoreConfig = Field(default_factory=StoreConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)


DEFAULT_CONFIG_PATH = Path(os.environ.get("CONFIG_PATH", "config/config.json"))

_ANALYTICS_ENV = {
    "ANALYTICS_DIA_HOURS": ("dia_hours", float),
    "ANALYTICS_INSULIN_CURVE": ("insulin_curve", str),
    "ANALYTICS_INSULIN_PEAK_MINUTES": ("insulin_peak_minutes", float),
    "ANALYTICS_CARB_CURVE": ("carb_curve", str),
    "ANALYTICS_CARB_ABSORPTION_MINUTES": ("carb_absorption_minutes", float),
    "ANALYTICS_NOMINAL_INTERVAL": ("nominal_interval_minutes", float),
    "ANALYTICS_GAP_FACTOR": ("gap_factor", float),
    "ANALYTICS_MIN_SUFFICIENT_READINGS": ("min_sufficient_readings", int),
    "ANALYTICS_AR2_HORIZON_POINTS": ("ar2_horizon_points", int),
    "ANALYTICS_GLUCOSE_UNITS": ("glucose_units", str),
}


def _load_file_config(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with path.open("r", encoding="utf-8") as fh:
            return json.load(fh)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON configuration at {path}") from exc


def _load_env() -> dict[str, Any]:
    env_config: dict[str, Any] = {}

    base_url = os.environ.get("STORE_BASE_URL") or os.environ.get("NIGHTSCOUT_URL")
    if base_url:
        env_config.setdefault("store", {})["base_url"] = base_url

    api_secret = os.environ.get("STORE_API_SECRET")
    if api_secret:
        env_config.setdefault("store", {})["api_secret"] = api_secret

    token = os.environ.get("STORE_TOKEN")
    if token:
        env_config.setdefault("store", {})["token"] = token

    timeout = os.environ.get("STORE_TIMEOUT_SECONDS")
    if timeout:
        env_config.setdefault("store", {})["timeout_seconds"] = int(timeout)

    database_url = os.environ.get("DATABASE_URL")
    if database_url:
        env_config.setdefault("database", {})["url"] = database_url

    for env_name, (key, cast) in _ANALYTICS_ENV.items():
        raw = os.environ.get(env_name)
        if raw:
            try:
                env_config.setdefault("analytics", {})[key] = cast(raw)
            except ValueError as exc:
                raise ConfigurationError(f"{env_name} has an invalid value: {raw!r}") from exc

    periods = os.environ.get("ANALYTICS_PERIOD_DAYS")
    if periods:
        env_config.setdefault("analytics", {})["period_days"] = [
            int(p.strip()) for p in periods.split(",") if p.strip()
        ]

    return env_config


def merge_settings(env_config: dict[str, Any], file_config: dict[str, Any]) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for section in ("store", "database", "analytics"):
        merged[section] = {**file_config.get(section, {}), **env_config.get(section, {})}
    return merged


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    env_config = _load_env()
    file_config = _load_file_config(DEFAULT_CONFIG_PATH)
    merged = merge_settings(env_config=env_config, file_config=file_config)
    try:
        settings = Settings.model_validate(merged)
    except ValidationError as exc:
        raise ConfigurationError(f"Configuration error: {exc}") from exc
    settings.analytics.validate_config()
    return settings


__all__ = ["AnalyticsConfig", "DatabaseConfig", "Settings", "StoreConfig", "get_settings"]
