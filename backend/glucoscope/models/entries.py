from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from glucoscope.core.errors import ConfigurationError


def _to_epoch_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def parse_timestamp(ts: str) -> Optional[int]:
    """ISO string -> epoch ms, None when the string cannot be parsed."""
    clean_ts = ts.strip().replace("Z", "+00:00")
    if not clean_ts:
        return None
    try:
        dt = datetime.fromisoformat(clean_ts)
    except ValueError:
        try:
            dt = datetime.strptime(clean_ts, "%Y-%m-%dT%H:%M:%S")
        except ValueError:
            return None
    return _to_epoch_ms(dt)


class TreatmentKind(str, Enum):
    BOLUS = "bolus"
    TEMP_BASAL = "temp_basal"
    COMBO_BOLUS = "combo_bolus"
    CARBS = "carbs"
    PROFILE_SWITCH = "profile_switch"
    TEMP_TARGET = "temp_target"
    SITE_CHANGE = "site_change"
    SENSOR_CHANGE = "sensor_change"
    BATTERY_CHANGE = "battery_change"
    CALIBRATION = "calibration"
    OTHER = "other"


EVENT_KINDS: dict[str, TreatmentKind] = {
    "Bolus": TreatmentKind.BOLUS,
    "Meal Bolus": TreatmentKind.BOLUS,
    "Snack Bolus": TreatmentKind.BOLUS,
    "Correction Bolus": TreatmentKind.BOLUS,
    "Bolus Wizard": TreatmentKind.BOLUS,
    "SMB": TreatmentKind.BOLUS,
    "Combo Bolus": TreatmentKind.COMBO_BOLUS,
    "Temp Basal": TreatmentKind.TEMP_BASAL,
    "Temp Basal Start": TreatmentKind.TEMP_BASAL,
    "Carb Correction": TreatmentKind.CARBS,
    "Carbs": TreatmentKind.CARBS,
    "Profile Switch": TreatmentKind.PROFILE_SWITCH,
    "Temporary Target": TreatmentKind.TEMP_TARGET,
    "Site Change": TreatmentKind.SITE_CHANGE,
    "Cannula Change": TreatmentKind.SITE_CHANGE,
    "Sensor Start": TreatmentKind.SENSOR_CHANGE,
    "Sensor Change": TreatmentKind.SENSOR_CHANGE,
    "Pump Battery Change": TreatmentKind.BATTERY_CHANGE,
    "Battery Change": TreatmentKind.BATTERY_CHANGE,
    "Calibration": TreatmentKind.CALIBRATION,
    "Sensor Calibration": TreatmentKind.CALIBRATION,
}


class GlucoseReading(BaseModel):
    mills: int = Field(validation_alias=AliasChoices("mills", "date"))
    sgv: float = Field(validation_alias=AliasChoices("sgv", "mgdl"))
    noise: Optional[int] = None
    filtered: Optional[float] = None
    unfiltered: Optional[float] = None
    direction: Optional[str] = None
    device: Optional[str] = None

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @field_validator("mills", mode="before")
    def ensure_epoch_ms(cls, v: int | float | datetime) -> int:
        if isinstance(v, datetime):
            return _to_epoch_ms(v)
        return int(v)


class Treatment(BaseModel):
    id: Optional[str] = Field(default=None, alias="_id")
    eventType: Optional[str] = None
    mills: Optional[int] = None
    created_at: Optional[str] = None
    enteredBy: Optional[str] = None
    insulin: Optional[float] = None
    carbs: Optional[float] = None
    protein: Optional[float] = None
    fat: Optional[float] = None
    duration: Optional[float] = None
    percent: Optional[float] = None
    absolute: Optional[float] = None
    rate: Optional[float] = None
    enteredinsulin: Optional[float] = None
    splitNow: Optional[float] = None
    splitExt: Optional[float] = None
    relative: Optional[float] = None
    absorptionTime: Optional[float] = None
    cuttedby: Optional[str] = None
    cutting: Optional[str] = None
    notes: Optional[str] = None

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    @field_validator("created_at", mode="before")
    def _isoformat(cls, v):
        if isinstance(v, datetime):
            return v.isoformat()
        return v

    @property
    def timestamp_ms(self) -> Optional[int]:
        if self.mills is not None and self.mills > 0:
            return self.mills
        if self.created_at:
            return parse_timestamp(self.created_at)
        return None

    @property
    def kind(self) -> TreatmentKind:
        if self.eventType in EVENT_KINDS:
            return EVENT_KINDS[self.eventType]
        if self.eventType and "bolus" in self.eventType.lower():
            return TreatmentKind.BOLUS
        if (self.insulin or 0) > 0:
            return TreatmentKind.BOLUS
        if (self.carbs or 0) > 0:
            return TreatmentKind.CARBS
        return TreatmentKind.OTHER

    @property
    def end_ms(self) -> Optional[int]:
        start = self.timestamp_ms
        if start is None:
            return None
        return start + int((self.duration or 0) * 60_000)


class ScheduleEntry(BaseModel):
    time: str = "00:00"
    value: float
    timeAsSeconds: Optional[int] = None

    @property
    def seconds(self) -> int:
        if self.timeAsSeconds is not None:
            return self.timeAsSeconds
        hour, minute = self.time.split(":")[:2]
        return int(hour) * 3600 + int(minute) * 60


class ActiveProfile(BaseModel):
    """Profile in effect: DIA and time-of-day schedules (profile-local time)."""

    dia: float = 3.0
    timezone: Optional[str] = None
    carbs_hr: Optional[float] = None
    carb_absorption_minutes: Optional[float] = None
    carb_delay_minutes: Optional[float] = None
    insulin_curve: Optional[str] = None
    insulin_peak_minutes: Optional[float] = None
    basal: list[ScheduleEntry] = Field(default_factory=lambda: [ScheduleEntry(value=0.0)])
    carbratio: list[ScheduleEntry] = Field(default_factory=lambda: [ScheduleEntry(value=10.0)])
    sens: list[ScheduleEntry] = Field(default_factory=lambda: [ScheduleEntry(value=50.0)])
    target_low: list[ScheduleEntry] = Field(default_factory=lambda: [ScheduleEntry(value=100.0)])
    target_high: list[ScheduleEntry] = Field(default_factory=lambda: [ScheduleEntry(value=120.0)])

    model_config = ConfigDict(frozen=True)

    def validate_profile(self) -> None:
        if self.dia <= 0:
            raise ConfigurationError(f"DIA must be positive, got {self.dia}")
        if any(entry.value < 0 for entry in self.basal):
            raise ConfigurationError("Basal schedule contains a negative rate")

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone) if self.timezone else ZoneInfo("UTC")

    def _local(self, mills: int) -> datetime:
        return datetime.fromtimestamp(mills / 1000, tz=timezone.utc).astimezone(self.zone)

    def _value_at(self, schedule: list[ScheduleEntry], mills: int) -> float:
        if not schedule:
            return 0.0
        local = self._local(mills)
        seconds = local.hour * 3600 + local.minute * 60 + local.second
        ordered = sorted(schedule, key=lambda e: e.seconds)
        value = ordered[0].value
        for entry in ordered:
            if entry.seconds <= seconds:
                value = entry.value
        return value

    def basal_rate_at(self, mills: int) -> float:
        return self._value_at(self.basal, mills)

    def sensitivity_at(self, mills: int) -> float:
        return self._value_at(self.sens, mills)

    def carb_ratio_at(self, mills: int) -> float:
        return self._value_at(self.carbratio, mills)

    def target_at(self, mills: int) -> tuple[float, float]:
        return self._value_at(self.target_low, mills), self._value_at(self.target_high, mills)

    def schedule_boundaries(self, start: int, end: int) -> list[int]:
        """Instants in (start, end) where the scheduled basal rate may change."""
        if end <= start or len(self.basal) < 2:
            return []
        boundaries: list[int] = []
        day = self._local(start).replace(hour=0, minute=0, second=0, microsecond=0)
        last_day = self._local(end).replace(hour=0, minute=0, second=0, microsecond=0)
        while day <= last_day:
            for entry in self.basal:
                at = (day + timedelta(seconds=entry.seconds)).replace(tzinfo=self.zone)
                mills = _to_epoch_ms(at)
                if start < mills < end:
                    boundaries.append(mills)
            day = (day + timedelta(days=1)).replace(tzinfo=self.zone)
        return sorted(set(boundaries))
