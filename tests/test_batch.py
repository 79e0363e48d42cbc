import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from store_forecast import fitting
from store_forecast.batch import (
    EntityInput,
    build_global_summary,
    forecasts_to_frame,
    models_to_frame,
    prepare_entities,
    run_batch,
)
from store_forecast.config import BatchParams, EngineParams
from store_forecast.engine import FORECAST_COLUMNS
from store_forecast.models import FitMode


def _months(start: str, n: int) -> list[str]:
    return [p.strftime("%Y-%m") for p in pd.period_range(start, periods=n, freq="M")]


def _growth(n: int, scale: float, k: float) -> list[float]:
    t = np.arange(n, dtype=float)
    return list(scale * (1.0 + 0.5 * expit(k * (t - n / 2.0))))


def _build_entities() -> list[EntityInput]:
    """Three mature stores, one startup store and one store that closed early."""
    return [
        EntityInput("A", _growth(36, 1000.0, 0.10), _months("2021-01", 36), {"region": "n"}),
        EntityInput("B", _growth(36, 2000.0, 0.15), _months("2021-01", 36), {"region": "s"}),
        EntityInput("C", _growth(36, 1500.0, 0.20), _months("2021-01", 36), {"region": "s"}),
        EntityInput("NEW", [300.0, 320.0, 340.0, 360.0, 380.0, 400.0, 420.0, 440.0], _months("2023-05", 8)),
        EntityInput("OLD", _growth(24, 800.0, 0.1), _months("2021-01", 24)),
    ]


def test_three_way_split_and_startup_prior():
    result = run_batch(_build_entities(), "2023-12")
    assert set(result.pass_one) == {"A", "B", "C"}
    # growth stores (12..35 valid months) join startup stores in pass two
    assert result.pass_two == ["OLD", "NEW"]

    new = result.models["NEW"]
    assert new.fit.mode is FitMode.STARTUP
    assert new.fit.params.k == result.global_summary.median_k
    np.testing.assert_allclose(new.seasonal, result.global_summary.median_seasonality)


def test_growth_store_gets_narrowed_k_range(monkeypatch):
    calls = []
    real_fit_bounds = fitting.fit_bounds

    def recording_fit_bounds(base, observed_max, n_valid, params, global_summary=None):
        bounds = real_fit_bounds(base, observed_max, n_valid, params, global_summary)
        calls.append((n_valid, global_summary is not None, bounds))
        return bounds

    monkeypatch.setattr(fitting, "fit_bounds", recording_fit_bounds)
    entities = _build_entities()[:3] + [
        EntityInput("MID", _growth(20, 900.0, 0.2), _months("2022-05", 20))
    ]
    result = run_batch(entities, "2023-12", batch_params=BatchParams(max_workers=1))
    assert result.pass_two == ["MID"]

    median_k = result.global_summary.median_k
    mid_calls = [c for c in calls if c[0] == 20]
    assert mid_calls
    for _, with_summary, bounds in mid_calls:
        assert with_summary
        assert bounds.min_k == pytest.approx(0.5 * median_k)
        assert bounds.max_k == pytest.approx(1.5 * median_k)
    assert all(not with_summary for n, with_summary, _ in calls if n == 36)
    assert 0.5 * median_k <= result.models["MID"].fit.params.k <= 1.5 * median_k


def test_global_summary_is_built_from_active_pass_one_models():
    result = run_batch(_build_entities(), "2023-12")
    summary = result.global_summary
    assert result.models["OLD"].is_active is False
    assert summary.n_entities == 3
    ks = [result.models[n].fit.params.k for n in ("A", "B", "C")]
    assert summary.median_k == pytest.approx(float(np.median(ks)))
    assert len(summary.median_seasonality) == 12
    assert np.mean(summary.median_seasonality) == pytest.approx(1.0)


def test_global_summary_defaults_without_fitted_models():
    summary = build_global_summary([], EngineParams())
    assert summary.median_k == 0.1
    assert summary.median_seasonality == tuple([1.0] * 12)
    assert summary.median_growth == 0.0
    assert summary.n_entities == 0


def test_bad_entity_is_recorded_not_raised():
    entities = _build_entities()
    entities.append(EntityInput("BAD", [100.0] * 14, _months("2022-01", 13) + ["2030-01"]))
    result = run_batch(entities, "2023-12")
    bad = result.models["BAD"]
    assert bad.error is True
    assert not bad.forecastable
    assert "contiguous" in bad.message
    assert result.models["A"].forecastable


def test_abc_ranks_assigned_to_every_entity():
    result = run_batch(_build_entities(), "2023-12")
    ranks = {name: m.derived_stats.abc_rank for name, m in result.models.items()}
    assert set(ranks.values()) <= {"A", "B", "C"}
    # the largest store by last-year sales is always class A
    assert ranks["B"] == "A"


def test_frames_cover_models_and_active_forecasts():
    result = run_batch(_build_entities(), "2023-12")
    models_df = models_to_frame(result.models)
    assert set(models_df["name"]) == {"A", "B", "C", "NEW", "OLD"}
    assert "seasonal_12" in models_df.columns
    assert models_df.loc[models_df["name"] == "A", "meta_region"].iloc[0] == "n"

    fc = forecasts_to_frame(result.models, 6)
    assert list(fc.columns) == FORECAST_COLUMNS
    # the closed store is not forecast
    assert set(fc["name"]) == {"A", "B", "C", "NEW"}
    assert len(fc) == 4 * 6


def test_forecasts_to_frame_empty_when_nothing_is_forecastable():
    fc = forecasts_to_frame({}, 6)
    assert fc.empty
    assert list(fc.columns) == FORECAST_COLUMNS


def test_parallel_run_matches_sequential():
    entities = _build_entities()[:3]
    seq = run_batch(entities, "2023-12", batch_params=BatchParams(max_workers=1))
    par = run_batch(entities, "2023-12", batch_params=BatchParams(max_workers=2))
    for name in ("A", "B", "C"):
        assert par.models[name].fit.mode is seq.models[name].fit.mode
        assert par.models[name].fit.aic == pytest.approx(seq.models[name].fit.aic)


# -------------------------
# Long-frame preparation
# -------------------------
def test_prepare_entities_fills_gaps_and_sums_duplicates():
    df = pd.DataFrame(
        {
            "store": ["s1", "s1", "s1", "s1", "s2", "s2"],
            "date": ["2023-01", "2023/01", "2023-03", "bad", "2023-02", "2023-04"],
            "value": [10, 5, 30, 99, 7, "x"],
            "region": ["east", "east", "east", "east", "west", "west"],
        }
    )
    entities, global_max = prepare_entities(df)
    by_name = {e.name: e for e in entities}
    assert global_max == "2023-03"
    assert by_name["s1"].dates == ["2023-01", "2023-02", "2023-03"]
    assert by_name["s1"].series == [15.0, 0.0, 30.0]
    assert by_name["s1"].metadata == {"region": "east"}
    # s2's April row had a non-numeric value and was dropped
    assert by_name["s2"].dates == ["2023-02"]


def test_prepare_entities_requires_columns():
    with pytest.raises(ValueError):
        prepare_entities(pd.DataFrame({"store": ["a"], "value": [1]}))
