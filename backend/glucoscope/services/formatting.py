import math

MMOL_FACTOR = 18.0


def format_insulin(value: float) -> str:
    """Pump-style insulin display: 0 -> "0", 0.5 -> ".50", 1 -> "1.00"."""
    if value == 0:
        return "0"
    text = f"{value:.2f}"
    if 0 < abs(value) < 1:
        text = text.replace("0.", ".", 1)
    return text


def format_carbs(value: float) -> str:
    if value == 0:
        return "0"
    text = f"{value:.1f}"
    if 0 < abs(value) < 1:
        text = text.replace("0.", ".", 1)
    return text


def format_percentage(value: float) -> str:
    return f"{value:.1f}"


def round_insulin_to_pump_precision(value: float, step: float = 0.05) -> float:
    # anything delivered at all is at least one pump step
    if value <= 0:
        return 0.0
    steps = max(1, math.floor(value / step + 0.5))
    return round(steps * step, 2)


def mgdl_to_mmol(mgdl: float) -> float:
    return round(mgdl / MMOL_FACTOR, 1)


def mmol_to_mgdl(mmol: float) -> int:
    return int(math.floor(mmol * MMOL_FACTOR + 0.5))


def mgdl_to_mmol_string(mgdl: float) -> str:
    return f"{mgdl / MMOL_FACTOR:.1f}"
