from typing import Literal, Optional

from pydantic import Field

from glucoscope.models.statistics import CamelModel


class TreatmentRef(CamelModel):
    id: Optional[str] = None
    mills: int
    insulin: Optional[float] = None
    carbs: Optional[float] = None
    event_type: Optional[str] = None
    entered_by: Optional[str] = None


class IobResult(CamelModel):
    iob: float = 0.0
    activity: float = 0.0
    basaliob: float = 0.0
    source: str = "Care Portal"
    device: Optional[str] = None
    mills: int
    last_bolus: Optional[TreatmentRef] = None
    display: str = "0.00"
    display_line: str = ""
    diagnostics: list[str] = Field(default_factory=list, exclude=True)


class CobResult(CamelModel):
    cob: float = 0.0
    activity: float = 0.0
    last_carbs: Optional[TreatmentRef] = None
    source: str = "Care Portal"
    mills: int
    display: str = "0g"
    display_line: str = ""
    diagnostics: list[str] = Field(default_factory=list, exclude=True)


SegmentKind = Literal["scheduled", "temp", "combo"]


class BasalSegment(CamelModel):
    start: int
    end: int
    rate: float
    kind: SegmentKind
    treatment_id: Optional[str] = None
    scheduled_rate: float = 0.0


class Truncation(CamelModel):
    treatment_id: Optional[str] = None
    cuttedby: Optional[str] = None
    original_end: int
    effective_end: int


class TempBasalLink(CamelModel):
    treatment_id: Optional[str] = None
    predecessor: Optional[str] = None
    successor: Optional[str] = None


class TempBasalResult(CamelModel):
    totalbasal: float = 0.0
    tempbasal: float = 0.0
    scheduledbasal: float = 0.0
    combobolusbasal: float = 0.0
    start: int = 0
    end: int = 0
    segments: list[BasalSegment] = Field(default_factory=list)
    truncations: list[Truncation] = Field(default_factory=list)
    linkage: list[TempBasalLink] = Field(default_factory=list)


class BasalRateAt(CamelModel):
    basal: float = 0.0
    tempbasal: Optional[float] = None
    combobolusbasal: float = 0.0
    totalbasal: float = 0.0
    treatment: Optional[TreatmentRef] = None
    combobolustreatment: Optional[TreatmentRef] = None
