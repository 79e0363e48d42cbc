import math

import numpy as np
import pandas as pd

from store_forecast.batch import EntityInput, run_batch
from store_forecast.engine import failed_model, fit_entity
from store_forecast.report import assemble_text_report, build_model_comparison, in_sample_mape


def _months(start: str, n: int) -> list[str]:
    return [p.strftime("%Y-%m") for p in pd.period_range(start, periods=n, freq="M")]


def test_in_sample_mape_is_small_for_clean_linear_series():
    raw = 1000.0 + 10.0 * np.arange(48)
    model = fit_entity("x", raw, _months("2012-01", 48), "2015-12")
    assert 0.0 <= in_sample_mape(model) < 5.0


def test_in_sample_mape_is_nan_without_components():
    model = failed_model("x", [1.0, 2.0], ["2020-01", "2020-02"], "boom", {})
    assert math.isnan(in_sample_mape(model))


def test_report_includes_correlation_of_largest_entities():
    t = np.arange(40, dtype=float)
    entities = [
        EntityInput("up", list(1000.0 + 10.0 * t), _months("2020-01", 40)),
        EntityInput("flat", list(800.0 + 40.0 * np.sin(t)), _months("2020-01", 40)),
        EntityInput("small", list(100.0 + 2.0 * t), _months("2020-01", 40)),
    ]
    result = run_batch(entities, "2023-04")
    dominant, table = build_model_comparison(result)
    text = assemble_text_report(result, table, dominant, corr_n=2)
    assert "=== Correlation of top 2 entities (last 12 months) ===" in text
    assert "fit_mape" in text
    # the smallest store is outside the correlation block
    block = text.split("=== Correlation of top 2 entities (last 12 months) ===")[1]
    block = block.split("\n\n")[0]
    assert "up" in block and "flat" in block
    assert "small" not in block
