import pytest

from glucoscope.core.errors import ConfigurationError
from glucoscope.services.math.curves import (
    CarbCurves,
    InsulinCurves,
    carb_activity,
    carb_iob,
    insulin_activity,
    insulin_iob,
)


@pytest.mark.parametrize("model", ["bilinear", "exponential"])
def test_insulin_curves_bounded_by_action_window(model):
    duration = InsulinCurves.duration(3, model)
    for elapsed in (duration, duration + 1, duration * 2):
        assert insulin_iob(elapsed, 3, model) == 0
        assert insulin_activity(elapsed, 3, model) == 0
    assert insulin_iob(0, 3, model) == 1
    assert insulin_iob(-5, 3, model) == 0
    assert insulin_activity(-5, 3, model) == 0


@pytest.mark.parametrize("model", ["bilinear", "exponential"])
def test_insulin_iob_monotone_and_in_unit_interval(model):
    previous = 1.0
    for elapsed in range(0, 200):
        value = insulin_iob(elapsed, 3, model)
        assert 0.0 <= value <= 1.0
        assert value <= previous + 1e-12
        previous = value


def test_bilinear_matches_legacy_quadratics():
    # first quadratic, x1 = t/5 + 1
    assert InsulinCurves.bilinear_iob(30, 3) == pytest.approx(1 - 0.001852 * 49 + 0.001852 * 7)
    # second quadratic, x2 = (t - 75)/5
    assert InsulinCurves.bilinear_iob(90, 3) == pytest.approx(0.001323 * 9 - 0.054233 * 3 + 0.55556)
    # both pieces meet at the peak
    assert InsulinCurves.bilinear_iob(74.999, 3) == pytest.approx(InsulinCurves.bilinear_iob(75, 3), abs=1e-3)


def test_bilinear_activity_peaks_at_75_minutes():
    peak = InsulinCurves.bilinear_activity(75, 3)
    assert peak == pytest.approx(2 / 180)
    assert InsulinCurves.bilinear_activity(30, 3) < peak
    assert InsulinCurves.bilinear_activity(120, 3) < peak


def test_bilinear_scales_with_longer_dia():
    # a 6h DIA stretches the 3h clock by two
    assert InsulinCurves.bilinear_iob(180, 6) == pytest.approx(InsulinCurves.bilinear_iob(90, 3))
    assert InsulinCurves.bilinear_duration(6) == 360
    # DIA below 3h is floored
    assert InsulinCurves.bilinear_duration(2) == 180


def test_exponential_falls_back_when_peak_too_late():
    assert InsulinCurves.exponential_iob(60, 3, peak_min=100) == InsulinCurves.bilinear_iob(60, 3)
    assert InsulinCurves.duration(3, "exponential", 100) == 180


def test_non_positive_dia_rejected():
    with pytest.raises(ConfigurationError):
        insulin_iob(10, 0)
    with pytest.raises(ConfigurationError):
        insulin_activity(10, -1, "exponential")


def test_linear_carbs_hold_during_delay():
    assert carb_iob(0, 180, 20) == 1
    assert carb_iob(19, 180, 20) == 1
    assert carb_activity(10, 180, 20) == 0
    assert carb_iob(20 + 90, 180, 20) == pytest.approx(0.5)
    assert carb_activity(50, 180, 20) == pytest.approx(1 / 180)
    assert carb_iob(200, 180, 20) == 0
    assert carb_iob(-1, 180, 20) == 0


def test_bilinear_carbs_absorb_half_at_midpoint():
    assert CarbCurves.bilinear_iob(20 + 60, 120, 20) == pytest.approx(0.5)
    assert CarbCurves.bilinear_activity(20 + 60, 120, 20) == pytest.approx(2 / 120)
    assert carb_iob(20 + 120, 120, 20, "bilinear") == 0


def test_carb_absorption_must_be_positive():
    with pytest.raises(ConfigurationError):
        carb_iob(10, 0)
    with pytest.raises(ConfigurationError):
        carb_activity(10, 60, -5)
