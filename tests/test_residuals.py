import numpy as np
import pytest

from store_forecast.models import FitMode, FitParameters, FitResult
from store_forecast.residuals import (
    decompose,
    estimate_correction,
    lag1_autocorrelation,
    residual_std,
)
from store_forecast.seasonality import extract_seasonality, normalize_profile


def test_very_short_history_uses_last_residual():
    res = [1.0, -2.0, 4.0, 3.0]
    corr = estimate_correction(res, [10.0] * 4)
    assert corr.nudge == 3.0
    assert 0.0 <= corr.nudge_decay <= 0.9


def test_short_history_averages_recent_residuals():
    res = [0.0, 0.0, 0.0, 3.0, 6.0, 9.0, 12.0, 15.0]
    corr = estimate_correction(res, [10.0] * 8)
    assert corr.nudge == pytest.approx(12.0)
    # strongly trending residuals autocorrelate; the decay is clamped at 0.9
    assert 0.0 < corr.nudge_decay <= 0.9


def test_short_history_decay_never_negative():
    res = [5.0, -5.0, 5.0, -5.0, 5.0, -5.0, 5.0]
    corr = estimate_correction(res, [10.0] * 7)
    assert corr.nudge_decay == 0.0


def test_long_history_uses_trimmed_mean_of_positive_months():
    res = np.zeros(24)
    res[-12:] = [1, 2, 3, 4, 5, 6, 7, 8, 9, 10, 100, -100]
    raw = np.full(24, 50.0)
    corr = estimate_correction(res, raw)
    # 20% trimmed from each end of the 12 recent residuals
    assert corr.nudge == pytest.approx(np.mean([2, 3, 4, 5, 6, 7, 8, 9]))
    assert corr.nudge_decay == 1.0


def test_long_history_skips_zero_sales_months():
    res = np.zeros(24)
    res[-12:] = 5.0
    res[-1] = -1000.0
    raw = np.full(24, 50.0)
    raw[-1] = 0.0
    corr = estimate_correction(res, raw)
    assert corr.nudge == pytest.approx(5.0)


def test_long_history_without_positive_months_has_zero_nudge():
    corr = estimate_correction(np.ones(24), np.zeros(24))
    assert corr.nudge == 0.0


def test_long_history_follows_same_signed_recent_run():
    res = np.zeros(24)
    res[-12:] = [20, 25, 30, 35, 40, 45, 50, 55, 60, -10, -12, -15]
    corr = estimate_correction(res, np.full(24, 50.0))
    # the trimmed mean is positive; the last three months all sit below trend
    assert corr.nudge == pytest.approx(np.mean([-10, -12, -15]))
    assert corr.nudge_decay == 1.0


def test_long_history_keeps_trimmed_mean_when_signs_agree():
    res = np.zeros(24)
    res[-12:] = [-20, -25, -30, -35, -40, -45, -50, -55, -60, -10, -12, -15]
    corr = estimate_correction(res, np.full(24, 50.0))
    assert corr.nudge == pytest.approx(np.mean([-15, -20, -25, -30, -35, -40, -45, -50]))


def test_lag1_autocorrelation_guards():
    assert lag1_autocorrelation([1.0, 2.0]) == 0.0
    assert lag1_autocorrelation([3.0, 3.0, 3.0, 3.0]) == 0.0
    assert lag1_autocorrelation([1.0, 2.0, 3.0, 4.0, 5.0, 6.0]) > 0


def test_residual_std_is_root_mean_square():
    assert residual_std([3.0, -3.0, 3.0, -3.0]) == pytest.approx(3.0)
    assert residual_std([]) == 0.0


def test_decompose_splits_actual_into_components():
    fit = FitResult(mode=FitMode.STANDARD, params=FitParameters(base=100.0, L=0.0, k=0.1))
    raw = np.array([110.0, 90.0, 100.0])
    seasonal = np.ones(12)
    seasonal[0] = 1.1
    comp = decompose(raw, [0, 1, 2], fit, seasonal)
    np.testing.assert_allclose(comp.trend, [100.0, 100.0, 100.0])
    np.testing.assert_allclose(comp.seasonal, [1.1, 1.0, 1.0])
    np.testing.assert_allclose(comp.residual, [0.0, -10.0, 0.0], atol=1e-9)


def test_normalize_profile_falls_back_to_ones():
    np.testing.assert_allclose(normalize_profile([0.0] * 12), np.ones(12))
    np.testing.assert_allclose(normalize_profile([1.0, 2.0]), np.ones(12))
    out = normalize_profile([2.0] * 6 + [4.0] * 6)
    assert out.mean() == pytest.approx(1.0)


def test_seasonality_defaults_missing_months_to_one():
    # flat trend at 100, six months of data at ratio 1.2
    fit = FitResult(mode=FitMode.STANDARD, params=FitParameters(base=100.0, L=0.0, k=0.1))
    raw = np.full(6, 120.0)
    profile = extract_seasonality(raw, np.ones(6, dtype=bool), [0, 1, 2, 3, 4, 5], fit)
    assert len(profile) == 12
    assert profile.mean() == pytest.approx(1.0)
    assert profile[0] > profile[6]
    np.testing.assert_allclose(profile[6:], profile[6])
