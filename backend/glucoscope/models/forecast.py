from typing import Literal, Optional

from pydantic import Field

from glucoscope.models.statistics import CamelModel

Ar2Phase = Literal["idle", "warmed_up", "forecasting"]


class ForecastPoint(CamelModel):
    mills: int
    mgdl: int
    color: str = "cyan"


class Ar2State(CamelModel):
    """Rolling per-account forecaster state. Values are ln(bg / BG_REF)."""

    phase: Ar2Phase = "idle"
    prev: Optional[float] = None
    curr: Optional[float] = None
    bucket_mills: Optional[int] = None
    bucket_values: list[float] = Field(default_factory=list)
    last_reading_mills: Optional[int] = None
    forecast_time: Optional[int] = None
    predicted: list[ForecastPoint] = Field(default_factory=list)


class Ar2Forecast(CamelModel):
    predicted: list[ForecastPoint] = Field(default_factory=list)
    avg_loss: float = 0.0


class Ar2Properties(Ar2Forecast):
    level: Optional[Literal["warn", "urgent"]] = None
    event_name: str = ""
    display_line: str = ""
    phase: Ar2Phase = "idle"
