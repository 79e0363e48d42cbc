import numpy as np

from store_forecast.config import EngineParams
from store_forecast.outliers import build_validity_mask, iqr_bounds


def _alternating_series(first: float) -> list[float]:
    # index 0 = first, then 100/200 alternating (20 x 100, 19 x 200)
    tail = [100.0 if i % 2 == 0 else 200.0 for i in range(39)]
    return [first] + tail


def test_iqr_bounds_use_positive_values_only():
    bounds = iqr_bounds([0, -5, 100, 100, 200, 200], iqr_k=1.5)
    assert bounds.q1 == 100.0
    assert bounds.q3 == 200.0
    assert bounds.upper == 350.0
    assert bounds.lower == -50.0


def test_iqr_bounds_none_without_positive_values():
    assert iqr_bounds([0, 0, -1]) is None


def test_value_exactly_at_upper_bound_is_valid():
    mask = build_validity_mask(_alternating_series(350.0))
    assert bool(mask[0]) is True
    assert mask.all()


def test_value_one_above_upper_bound_is_invalid():
    # index 0 sits outside the 24-month rescue window
    mask = build_validity_mask(_alternating_series(351.0))
    assert bool(mask[0]) is False
    assert mask[1:].all()


def test_fewer_than_four_positive_values_marks_everything_invalid():
    mask = build_validity_mask([0, 10, 0, 20, 30, 0])
    assert mask.dtype == bool
    assert not mask.any()


def test_zero_and_missing_values_are_never_valid():
    series = [100.0] * 10 + [0.0, float("nan"), -3.0] + [100.0] * 10
    mask = build_validity_mask(series)
    assert not mask[10] and not mask[11] and not mask[12]
    assert mask[:10].all() and mask[13:].all()


def test_recent_growth_is_rescued_by_trailing_average():
    # IQR collapses to [100, 100]; the 105s fall outside it but within 11% of the
    # trailing average, the final 150 does not. Index 0 is too old to be rescued.
    series = [105.0] + [100.0] * 29 + [105.0] * 5 + [150.0]
    mask = build_validity_mask(series)
    assert bool(mask[0]) is False
    assert mask[1:30].all()
    assert mask[30:35].all()
    assert bool(mask[35]) is False


def test_rescue_can_be_disabled_with_zero_window():
    series = [100.0] * 30 + [105.0] * 5
    mask = build_validity_mask(series, EngineParams(rescue_window=0))
    assert not mask[30:].any()
    assert np.count_nonzero(mask) == 30
