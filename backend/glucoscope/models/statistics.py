from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from glucoscope.core.errors import ConfigurationError


class CamelModel(BaseModel):
    """Base for exported records: snake_case in Python, legacy camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class GlycemicThresholds(CamelModel):
    severe_low: float = 54
    low: float = 70
    target_bottom: float = 70
    target_top: float = 180
    tight_target_bottom: float = 70
    tight_target_top: float = 140
    high: float = 180
    severe_high: float = 250

    def validate_ordering(self) -> None:
        if not (
            self.severe_low < self.low <= self.target_bottom < self.target_top <= self.high < self.severe_high
        ):
            raise ConfigurationError(
                "Thresholds must satisfy severeLow < low <= targetBottom < targetTop <= high < severeHigh"
            )
        if not (self.target_bottom <= self.tight_target_bottom < self.tight_target_top <= self.target_top):
            raise ConfigurationError("Tight target band must sit inside the target band")


class GlucosePercentiles(CamelModel):
    p5: float = 0.0
    p10: float = 0.0
    p25: float = 0.0
    p50: float = 0.0
    p75: float = 0.0
    p90: float = 0.0
    p95: float = 0.0


class BasicGlucoseStats(CamelModel):
    count: int = 0
    mean: float = 0.0
    median: float = 0.0
    min: float = 0.0
    max: float = 0.0
    standard_deviation: float = 0.0
    percentiles: GlucosePercentiles = Field(default_factory=GlucosePercentiles)


class AveragedStats(BasicGlucoseStats):
    hour: int = 0


class TimeInRangeBands(CamelModel):
    severe_low: float = 0.0
    low: float = 0.0
    target: float = 0.0
    tight_target: float = 0.0
    high: float = 0.0
    severe_high: float = 0.0


class TimeInRangeEpisodes(CamelModel):
    severe_low: int = 0
    low: int = 0
    high: int = 0
    severe_high: int = 0


class TimeInRangeMetrics(CamelModel):
    percentages: TimeInRangeBands = Field(default_factory=TimeInRangeBands)
    durations: TimeInRangeBands = Field(default_factory=TimeInRangeBands)
    episodes: TimeInRangeEpisodes = Field(default_factory=TimeInRangeEpisodes)


class GlycemicVariability(CamelModel):
    cv: float = 0.0
    standard_deviation: float = 0.0
    mage: float = 0.0
    conga: float = 0.0
    adrr: float = 0.0
    lability_index: float = 0.0
    j_index: float = 0.0
    hbgi: float = 0.0
    lbgi: float = 0.0
    gvi: float = 0.0
    pgs: float = 0.0
    pgs_category: str = ""
    estimated_a1c: float = 0.0
    gmi: float = 0.0


class DataGap(CamelModel):
    start: int
    end: int
    duration: float


class GapAnalysis(CamelModel):
    gaps: list[DataGap] = Field(default_factory=list)
    longest_gap: float = 0.0
    average_gap: float = 0.0


class DataQuality(CamelModel):
    total_readings: int = 0
    missing_readings: int = 0
    data_completeness: float = 0.0
    cgm_active_percent: float = 0.0
    gap_analysis: GapAnalysis = Field(default_factory=GapAnalysis)
    noise_level: float = 0.0
    calibration_events: int = 0
    sensor_warmups: int = 0


class DistributionDataPoint(CamelModel):
    range: str
    count: int
    percent: float


class AnalysisTime(CamelModel):
    start: int = 0
    end: int = 0
    time_of_analysis: int = 0


class GlucoseAnalytics(CamelModel):
    basic_stats: BasicGlucoseStats = Field(default_factory=BasicGlucoseStats)
    time_in_range: TimeInRangeMetrics = Field(default_factory=TimeInRangeMetrics)
    glycemic_variability: GlycemicVariability = Field(default_factory=GlycemicVariability)
    data_quality: DataQuality = Field(default_factory=DataQuality)
    time: AnalysisTime = Field(default_factory=AnalysisTime)


class FoodTotals(CamelModel):
    carbs: float = 0.0
    protein: float = 0.0
    fat: float = 0.0


class InsulinTotals(CamelModel):
    bolus: float = 0.0
    basal: float = 0.0


class TreatmentTotals(CamelModel):
    food: FoodTotals = Field(default_factory=FoodTotals)
    insulin: InsulinTotals = Field(default_factory=InsulinTotals)


class TreatmentSummary(CamelModel):
    totals: TreatmentTotals = Field(default_factory=TreatmentTotals)
    treatment_count: int = 0
    basal_bolus_ratio: float = 0.0
    bolus_percentage: float = 0.0
    basal_percentage: float = 0.0


class OverallAverages(CamelModel):
    avg_total_daily: float = 0.0
    avg_bolus: float = 0.0
    avg_basal: float = 0.0
    bolus_percentage: float = 0.0
    basal_percentage: float = 0.0
    avg_carbs: float = 0.0
    avg_protein: float = 0.0
    avg_fat: float = 0.0
    avg_time_in_range: float = 0.0
    avg_tight_time_in_range: float = 0.0


class DayData(CamelModel):
    date: str
    treatment_summary: TreatmentSummary = Field(default_factory=TreatmentSummary)
    time_in_ranges: TimeInRangeMetrics = Field(default_factory=TimeInRangeMetrics)


class PeriodStatistics(CamelModel):
    period_days: int
    start_date: int
    end_date: int
    analytics: Optional[GlucoseAnalytics] = None
    treatment_summary: Optional[TreatmentSummary] = None
    has_sufficient_data: bool = False
    entry_count: int = 0
    treatment_count: int = 0


class MultiPeriodStatistics(CamelModel):
    last_day: Optional[PeriodStatistics] = None
    last_3_days: Optional[PeriodStatistics] = Field(default=None, alias="last3Days")
    last_week: Optional[PeriodStatistics] = None
    last_month: Optional[PeriodStatistics] = None
    last_90_days: Optional[PeriodStatistics] = Field(default=None, alias="last90Days")
    periods: dict[int, PeriodStatistics] = Field(default_factory=dict)
    last_updated: int = 0
