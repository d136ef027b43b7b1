import math

from glucoscope.core.errors import ConfigurationError

# legacy bilinear model works on a 3h clock
BILINEAR_BASE_DIA_HOURS = 3.0
BILINEAR_PEAK = 75.0
BILINEAR_END = 180.0
DEFAULT_EXPONENTIAL_PEAK = 75.0


def _clamp01(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(1.0, max(0.0, value))


class InsulinCurves:
    """
    Insulin decay models. All functions take elapsed minutes since the dose and
    return a fraction of the dose: activity per minute, or remaining on board.
    """

    @staticmethod
    def _check(dia_hours: float) -> None:
        if dia_hours is None or dia_hours <= 0:
            raise ConfigurationError(f"DIA must be positive, got {dia_hours}")

    @staticmethod
    def bilinear_duration(dia_hours: float) -> float:
        return max(dia_hours, BILINEAR_BASE_DIA_HOURS) * 60.0

    @staticmethod
    def _bilinear_scaled(t_min: float, dia_hours: float) -> float:
        return t_min * BILINEAR_BASE_DIA_HOURS / max(dia_hours, BILINEAR_BASE_DIA_HOURS)

    @staticmethod
    def bilinear_activity(t_min: float, dia_hours: float) -> float:
        InsulinCurves._check(dia_hours)
        if t_min < 0 or t_min >= InsulinCurves.bilinear_duration(dia_hours):
            return 0.0
        dia = max(dia_hours, BILINEAR_BASE_DIA_HOURS)
        h = 2.0 / (dia * 60.0)
        s = InsulinCurves._bilinear_scaled(t_min, dia_hours)
        if s < BILINEAR_PEAK:
            return _clamp01(h * s / BILINEAR_PEAK)
        return _clamp01(h * (BILINEAR_END - s) / (BILINEAR_END - BILINEAR_PEAK))

    @staticmethod
    def bilinear_iob(t_min: float, dia_hours: float) -> float:
        InsulinCurves._check(dia_hours)
        if t_min < 0 or t_min >= InsulinCurves.bilinear_duration(dia_hours):
            return 0.0
        s = InsulinCurves._bilinear_scaled(t_min, dia_hours)
        if s < BILINEAR_PEAK:
            x1 = s / 5.0 + 1.0
            return _clamp01(1.0 - 0.001852 * x1 * x1 + 0.001852 * x1)
        x2 = (s - BILINEAR_PEAK) / 5.0
        # quadratic turns upward past its vertex
        if x2 >= 0.054233 / (2 * 0.001323):
            return 0.0
        return _clamp01(0.001323 * x2 * x2 - 0.054233 * x2 + 0.55556)

    @staticmethod
    def _exponential_params(peak_min: float, duration_min: float) -> tuple[float, float, float]:
        tau = peak_min * (1 - peak_min / duration_min) / (1 - 2 * peak_min / duration_min)
        a = 2 * tau / duration_min
        S = 1 / (1 - a + (1 + a) * math.exp(-duration_min / tau))
        return tau, a, S

    @staticmethod
    def _exponential_usable(peak_min: float, duration_min: float) -> bool:
        return 0 < peak_min < duration_min / 2

    @staticmethod
    def exponential_activity(t_min: float, dia_hours: float, peak_min: float = DEFAULT_EXPONENTIAL_PEAK) -> float:
        InsulinCurves._check(dia_hours)
        td = dia_hours * 60.0
        if not InsulinCurves._exponential_usable(peak_min, td):
            return InsulinCurves.bilinear_activity(t_min, dia_hours)
        if t_min < 0 or t_min >= td:
            return 0.0
        tau, _, S = InsulinCurves._exponential_params(peak_min, td)
        return _clamp01((S / tau**2) * t_min * (1 - t_min / td) * math.exp(-t_min / tau))

    @staticmethod
    def exponential_iob(t_min: float, dia_hours: float, peak_min: float = DEFAULT_EXPONENTIAL_PEAK) -> float:
        InsulinCurves._check(dia_hours)
        td = dia_hours * 60.0
        if not InsulinCurves._exponential_usable(peak_min, td):
            return InsulinCurves.bilinear_iob(t_min, dia_hours)
        if t_min < 0 or t_min >= td:
            return 0.0
        tau, a, S = InsulinCurves._exponential_params(peak_min, td)
        inner = (t_min**2 / (tau * td * (1 - a)) - t_min / tau - 1) * math.exp(-t_min / tau) + 1
        return _clamp01(1 - S * (1 - a) * inner)

    @staticmethod
    def duration(dia_hours: float, model: str = "bilinear", peak_min: float = DEFAULT_EXPONENTIAL_PEAK) -> float:
        """Minutes after which the dose has no activity left."""
        InsulinCurves._check(dia_hours)
        td = dia_hours * 60.0
        if model == "exponential" and InsulinCurves._exponential_usable(peak_min, td):
            return td
        return InsulinCurves.bilinear_duration(dia_hours)


class CarbCurves:
    @staticmethod
    def _check(absorption_min: float, delay_min: float) -> None:
        if absorption_min is None or absorption_min <= 0:
            raise ConfigurationError(f"Carb absorption time must be positive, got {absorption_min}")
        if delay_min < 0:
            raise ConfigurationError("Carb absorption delay cannot be negative")

    @staticmethod
    def linear_activity(t_min: float, absorption_min: float, delay_min: float = 20.0) -> float:
        CarbCurves._check(absorption_min, delay_min)
        s = t_min - delay_min
        if t_min < 0 or s < 0 or s >= absorption_min:
            return 0.0
        return 1.0 / absorption_min

    @staticmethod
    def linear_iob(t_min: float, absorption_min: float, delay_min: float = 20.0) -> float:
        CarbCurves._check(absorption_min, delay_min)
        if t_min < 0:
            return 0.0
        s = t_min - delay_min
        if s < 0:
            return 1.0
        if s >= absorption_min:
            return 0.0
        return _clamp01(1.0 - s / absorption_min)

    @staticmethod
    def bilinear_activity(t_min: float, absorption_min: float, delay_min: float = 20.0) -> float:
        CarbCurves._check(absorption_min, delay_min)
        s = t_min - delay_min
        if t_min < 0 or s < 0 or s >= absorption_min:
            return 0.0
        half = absorption_min / 2.0
        h = 2.0 / absorption_min
        if s < half:
            return h * s / half
        return h * (absorption_min - s) / half

    @staticmethod
    def bilinear_iob(t_min: float, absorption_min: float, delay_min: float = 20.0) -> float:
        CarbCurves._check(absorption_min, delay_min)
        if t_min < 0:
            return 0.0
        s = t_min - delay_min
        if s < 0:
            return 1.0
        if s >= absorption_min:
            return 0.0
        if s < absorption_min / 2.0:
            return _clamp01(1.0 - 2.0 * s * s / absorption_min**2)
        remaining = absorption_min - s
        return _clamp01(2.0 * remaining * remaining / absorption_min**2)


def insulin_activity(elapsed: float, dia: float, model: str = "bilinear", peak: float = DEFAULT_EXPONENTIAL_PEAK) -> float:
    if model == "exponential":
        return InsulinCurves.exponential_activity(elapsed, dia, peak)
    return InsulinCurves.bilinear_activity(elapsed, dia)


def insulin_iob(elapsed: float, dia: float, model: str = "bilinear", peak: float = DEFAULT_EXPONENTIAL_PEAK) -> float:
    # a dose is fully on board at the instant it is given
    if elapsed == 0:
        InsulinCurves._check(dia)
        return 1.0
    if model == "exponential":
        return InsulinCurves.exponential_iob(elapsed, dia, peak)
    return InsulinCurves.bilinear_iob(elapsed, dia)


def carb_activity(elapsed: float, absorption: float, delay: float = 20.0, model: str = "linear") -> float:
    if model == "bilinear":
        return CarbCurves.bilinear_activity(elapsed, absorption, delay)
    return CarbCurves.linear_activity(elapsed, absorption, delay)


def carb_iob(elapsed: float, absorption: float, delay: float = 20.0, model: str = "linear") -> float:
    if model == "bilinear":
        return CarbCurves.bilinear_iob(elapsed, absorption, delay)
    return CarbCurves.linear_iob(elapsed, absorption, delay)


__all__ = [
    "CarbCurves",
    "InsulinCurves",
    "carb_activity",
    "carb_iob",
    "insulin_activity",
    "insulin_iob",
]
