"""
Per-entity fitting/forecasting engine.

Public entry points:
- fit_entity(): mask -> baseline -> breaks -> candidate fits -> AIC selection ->
  seasonality -> residual correction, returning an EntityModel.
- forecast_entity(): project a fitted EntityModel beyond its observed range.

Both are pure: no I/O, no shared state. Degenerate data never raises; it comes back
as an EntityModel flagged insufficient_data. Contract violations by the caller
(mismatched lengths, unparseable or non-contiguous dates) raise SeriesValidationError.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence

import numpy as np
import pandas as pd

from .config import EngineParams
from .fitting import fit_startup, select_model
from .models import (
    EntityModel,
    FitMode,
    FitParameters,
    FitResult,
    GlobalSummary,
    ResidualCorrection,
    project_array,
)
from .outliers import build_validity_mask
from .residuals import decompose, estimate_correction, residual_std
from .seasonality import extract_seasonality, normalize_profile
from .stats import compute_derived_stats
from .timeline import future_months, is_active, validate_series

logger = logging.getLogger(__name__)

INSUFFICIENT_DATA_MESSAGE = "insufficient data"

FORECAST_COLUMNS = [
    "name",
    "date",
    "t",
    "h",
    "trend",
    "seasonal",
    "nudge",
    "forecast",
    "lower",
    "upper",
]


def _insufficient_model(
    name: str,
    raw: np.ndarray,
    dates: Sequence[str],
    mask: np.ndarray,
    active: bool,
    metadata: Dict[str, Any],
    message: str = INSUFFICIENT_DATA_MESSAGE,
    error: bool = False,
) -> EntityModel:
    """Zero-parameter placeholder so callers can skip forecasting this entity."""
    return EntityModel(
        name=name,
        series=raw,
        dates=list(dates),
        mask=mask,
        is_active=active,
        fit=FitResult(mode=FitMode.STARTUP, params=FitParameters(), aic=0.0),
        seasonal=np.ones(12),
        correction=ResidualCorrection(),
        std_dev=0.0,
        derived_stats=compute_derived_stats(raw, mask),
        metadata=dict(metadata),
        insufficient_data=not error,
        error=error,
        message=message,
    )


def failed_model(
    name: str,
    series: Sequence[float],
    dates: Sequence[str],
    message: str,
    metadata: Optional[Dict[str, Any]] = None,
) -> EntityModel:
    """EntityModel recording a per-entity failure (used by the batch runner)."""
    raw = np.asarray(series, dtype=float)
    return _insufficient_model(
        name,
        raw,
        dates,
        np.zeros(len(raw), dtype=bool),
        False,
        metadata or {},
        message=message,
        error=True,
    )


def fit_entity(
    name: str,
    series: Sequence[float],
    dates: Sequence[str],
    global_max_date: str | pd.Period | pd.Timestamp,
    global_summary: Optional[GlobalSummary] = None,
    metadata: Optional[Dict[str, Any]] = None,
    params: Optional[EngineParams] = None,
) -> EntityModel:
    """
    Fit one entity's monthly series.

    Args:
        name: entity identifier (passed through).
        series: raw monthly values; missing values may be NaN and are never valid.
        dates: 'YYYY-MM' or 'YYYY/MM' per value, contiguous.
        global_max_date: latest month across all entities; an entity whose last month is
            params.active_days or more older is flagged inactive.
        global_summary: pass-one priors, required for startup entities.
        metadata: free-form grouping labels, passed through unmodified.
        params: engine tunables; defaults from EngineParams().

    Returns:
        EntityModel. Entities with fewer than params.min_valid_months valid months are fit
        in STARTUP mode with the summary's k and seasonal profile, or flagged
        insufficient_data when no summary is supplied.
    """
    params = params or EngineParams()
    metadata = metadata or {}
    periods = validate_series(series, dates)
    raw = np.asarray(series, dtype=float)
    raw = np.where(np.isfinite(raw), raw, 0.0)
    dates = [p.strftime("%Y-%m") for p in periods]
    months = np.array([p.month - 1 for p in periods], dtype=int)

    mask = build_validity_mask(raw, params)
    n_valid = int(mask.sum())
    active = bool(dates) and is_active(dates[-1], global_max_date, params.active_days)

    if n_valid == 0:
        logger.debug("%s: no valid months", name)
        return _insufficient_model(name, raw, dates, mask, active, metadata)

    if n_valid < params.min_valid_months:
        if global_summary is None:
            logger.debug("%s: %d valid months and no global summary", name, n_valid)
            return _insufficient_model(name, raw, dates, mask, active, metadata)
        fit = fit_startup(raw, mask, global_summary, params)
        seasonal = normalize_profile(global_summary.median_seasonality)
    else:
        fit = select_model(raw, mask, dates, params, global_summary)
        seasonal = extract_seasonality(raw, mask, months, fit)

    components = decompose(raw, months, fit, seasonal)
    correction = estimate_correction(components.residual, raw, params)

    logger.debug(
        "%s: mode=%s aic=%.4f valid=%d/%d nudge=%.4f decay=%.3f",
        name,
        fit.mode.label,
        fit.aic,
        n_valid,
        len(raw),
        correction.nudge,
        correction.nudge_decay,
    )
    return EntityModel(
        name=name,
        series=raw,
        dates=dates,
        mask=mask,
        is_active=active,
        fit=fit,
        seasonal=seasonal,
        correction=correction,
        std_dev=residual_std(components.residual),
        derived_stats=compute_derived_stats(raw, mask),
        components=components,
        metadata=dict(metadata),
    )


def forecast_entity(
    model: EntityModel,
    horizon: int,
    params: Optional[EngineParams] = None,
    apply_decay: bool = True,
) -> pd.DataFrame:
    """
    Project a fitted entity horizon months past its last observation.

    forecast(h) = max(0, trend(n-1+h) * seasonal[month] + nudge * decay^h), h = 1..horizon.
    With apply_decay=False the nudge is held at full strength. The band is
    forecast +- interval_z * std_dev, floored at 0. Entities that cannot be forecast
    yield an empty frame with the same columns.
    """
    params = params or EngineParams()
    if not model.forecastable or horizon <= 0 or len(model.series) == 0:
        return pd.DataFrame(columns=FORECAST_COLUMNS)

    n = len(model.series)
    h = np.arange(1, horizon + 1)
    t = (n - 1 + h).astype(float)
    fit = model.fit
    trend = project_array(t, fit.params, fit.mode, fit.break_index, fit.break_index2)
    dates = future_months(model.dates[-1], horizon)
    months = np.array([int(d[5:7]) - 1 for d in dates], dtype=int)
    factors = np.asarray(model.seasonal, dtype=float)[months]
    decay = model.correction.nudge_decay if apply_decay else 1.0
    nudge = model.correction.nudge * np.power(decay, h)
    forecast = np.maximum(trend * factors + nudge, 0.0)
    band = params.interval_z * model.std_dev

    return pd.DataFrame(
        {
            "name": model.name,
            "date": dates,
            "t": t.astype(int),
            "h": h,
            "trend": trend,
            "seasonal": factors,
            "nudge": nudge,
            "forecast": forecast,
            "lower": np.maximum(forecast - band, 0.0),
            "upper": forecast + band,
        },
        columns=FORECAST_COLUMNS,
    )


def reconstruct(model: EntityModel) -> np.ndarray:
    """In-sample trend * seasonal for every observed month (no nudge)."""
    if model.components is None:
        return np.zeros(len(model.series))
    return model.components.trend * model.components.seasonal
