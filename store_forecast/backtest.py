"""
Holdout backtest: refit each entity without its last `holdout` months, forecast
those months with the nudge held at full strength and score the forecast.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from sklearn.metrics import mean_absolute_error, mean_squared_error

from .config import EngineParams
from .engine import fit_entity, forecast_entity
from .models import GlobalSummary

logger = logging.getLogger(__name__)

BACKTEST_COLUMNS = [
    "name",
    "mode",
    "holdout",
    "mape",
    "rmse",
    "mae",
    "bias",
    "tracking_signal",
    "train_k",
    "train_L",
]


def score_forecast(actual: Sequence[float], predicted: Sequence[float]) -> Dict[str, float]:
    """
    Accuracy metrics over the months with a positive actual value.

    mape is in percent; bias is mean(actual - predicted); tracking_signal is the
    summed error over the MAE (0 when the MAE is 0). All metrics are NaN when no
    positive actual exists.
    """
    y = np.asarray(actual, dtype=float)
    p = np.asarray(predicted, dtype=float)
    keep = np.isfinite(y) & np.isfinite(p) & (y > 0)
    if not keep.any():
        nan = float("nan")
        return {"mape": nan, "rmse": nan, "mae": nan, "bias": nan, "tracking_signal": nan}
    y, p = y[keep], p[keep]
    err = y - p
    mae = float(mean_absolute_error(y, p))
    return {
        "mape": float(np.mean(np.abs(err / y)) * 100),
        "rmse": float(np.sqrt(mean_squared_error(y, p))),
        "mae": mae,
        "bias": float(err.mean()),
        "tracking_signal": float(err.sum() / mae) if mae != 0 else 0.0,
    }


def backtest_entity(
    name: str,
    series: Sequence[float],
    dates: Sequence[str],
    holdout: int,
    params: Optional[EngineParams] = None,
    global_summary: Optional[GlobalSummary] = None,
) -> Optional[Dict[str, Any]]:
    """
    Score one entity. Needs holdout + params.min_valid_months months; returns None
    when the history is too short or the training fit cannot be forecast.
    """
    params = params or EngineParams()
    if holdout <= 0 or len(series) < holdout + params.min_valid_months:
        return None

    train_raw = list(series[:-holdout])
    train_dates = list(dates[:-holdout])
    test_raw = np.asarray(series[-holdout:], dtype=float)

    model = fit_entity(
        name,
        train_raw,
        train_dates,
        train_dates[-1],
        global_summary=global_summary,
        params=params,
    )
    if not model.forecastable:
        return None
    fc = forecast_entity(model, holdout, params, apply_decay=False)
    row: Dict[str, Any] = {
        "name": name,
        "mode": model.fit.mode.label,
        "holdout": holdout,
        "train_k": model.fit.params.k,
        "train_L": model.fit.params.L,
    }
    row.update(score_forecast(test_raw, fc["forecast"].to_numpy(dtype=float)))
    return row


def run_backtest(
    entities: Sequence[Any],
    holdout: int,
    params: Optional[EngineParams] = None,
    global_summary: Optional[GlobalSummary] = None,
) -> pd.DataFrame:
    """
    Backtest every entity (objects with name/series/dates) and return rows sorted by
    MAPE ascending. Entities that fail are logged and skipped.
    """
    rows: List[Dict[str, Any]] = []
    for item in entities:
        try:
            row = backtest_entity(
                item.name, item.series, item.dates, holdout, params, global_summary
            )
        except Exception:
            logger.exception("Backtest failed for %s", item.name)
            continue
        if row is not None:
            rows.append(row)
    if not rows:
        return pd.DataFrame(columns=BACKTEST_COLUMNS)
    df = pd.DataFrame(rows, columns=BACKTEST_COLUMNS)
    return df.sort_values("mape", na_position="last").reset_index(drop=True)
