"""
Residual decomposition and the short-horizon nudge/decay correction.

Residuals are taken against the raw series for every month, outliers included:
the correction has to anchor to what actually happened most recently, not to the
cleaned series. The correction is applied only beyond the observed range.
"""

from __future__ import annotations

import logging
import math
import warnings
from typing import Optional, Sequence

import numpy as np
from scipy.stats import trim_mean
from statsmodels.tsa.stattools import acf

from .config import EngineParams
from .models import Components, FitResult, ResidualCorrection, project_array

logger = logging.getLogger(__name__)


def decompose(
    raw: Sequence[float],
    months: Sequence[int],
    fit: FitResult,
    seasonal: Sequence[float],
) -> Components:
    """trend(i), seasonal[month(i)] and residual = actual - trend*seasonal for every month."""
    raw = np.asarray(raw, dtype=float)
    t = np.arange(len(raw), dtype=float)
    trend = project_array(t, fit.params, fit.mode, fit.break_index, fit.break_index2)
    factors = np.asarray(seasonal, dtype=float)[np.asarray(months, dtype=int)]
    return Components(trend=trend, seasonal=factors, residual=raw - trend * factors)


def lag1_autocorrelation(values: Sequence[float]) -> float:
    """
    Lag-1 autocorrelation via statsmodels' acf.

    Fewer than 3 points, zero variance or a non-finite result -> 0.0.
    """
    x = np.asarray(values, dtype=float)
    if x.size < 3 or not np.all(np.isfinite(x)) or float(np.var(x)) == 0.0:
        return 0.0
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", RuntimeWarning)
        r = float(acf(x, nlags=1, fft=False)[1])
    return r if math.isfinite(r) else 0.0


def estimate_correction(
    residuals: Sequence[float],
    raw: Sequence[float],
    params: Optional[EngineParams] = None,
) -> ResidualCorrection:
    """
    Nudge and per-step decay from the recent residuals, by total history length n.

    - n < nudge_history_short (6): nudge = last residual.
    - n < nudge_history_long (12): nudge = mean of the last nudge_recent_points residuals.
      Both short rules: decay = lag-1 autocorrelation of the last nudge_lookback residuals,
      clamped to [0, decay_max].
    - otherwise: residuals of the last nudge_lookback months whose raw value is positive,
      trimmed mean cutting nudge_trim from each end; decay = 1.0. When the last
      nudge_recent_points of those residuals share a sign the trimmed mean disagrees
      with, their mean is used instead.
    """
    params = params or EngineParams()
    res = np.asarray(residuals, dtype=float)
    raw = np.asarray(raw, dtype=float)
    n = res.size
    if n == 0:
        return ResidualCorrection(nudge=0.0, nudge_decay=0.0)

    if n < params.nudge_history_long:
        if n < params.nudge_history_short:
            nudge = float(res[-1])
        else:
            nudge = float(res[-params.nudge_recent_points :].mean())
        rho = lag1_autocorrelation(res[-params.nudge_lookback :])
        decay = min(max(rho, 0.0), params.decay_max)
        return ResidualCorrection(nudge=nudge, nudge_decay=decay)

    recent_res = res[-params.nudge_lookback :]
    recent_raw = raw[-params.nudge_lookback :]
    kept = recent_res[recent_raw > 0]
    if kept.size == 0:
        logger.debug("No positive months in the last %d; nudge set to 0", params.nudge_lookback)
        return ResidualCorrection(nudge=0.0, nudge_decay=1.0)
    nudge = float(trim_mean(kept, params.nudge_trim))
    tail = kept[-params.nudge_recent_points :]
    tail_sign = np.sign(tail)
    if tail.size and tail_sign[0] != 0 and np.all(tail_sign == tail_sign[0]):
        if np.sign(nudge) != tail_sign[0]:
            # a same-signed recent run overrides the trimmed mean
            nudge = float(tail.mean())
    return ResidualCorrection(nudge=nudge, nudge_decay=1.0)


def residual_std(residuals: Sequence[float]) -> float:
    """Root mean square of the residuals (0.0 for an empty series)."""
    res = np.asarray(residuals, dtype=float)
    if res.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(res * res)))
