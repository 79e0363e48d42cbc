"""
Outlier mask builder.

IQR filtering over strictly positive values followed by a moving-average rescue
pass over the most recent months, so genuine recent growth that exceeds the
historical IQR band is not thrown away.
"""

from __future__ import annotations

import logging
from typing import NamedTuple, Optional, Sequence

import numpy as np
import pandas as pd

from .config import EngineParams

logger = logging.getLogger(__name__)


class IQRBounds(NamedTuple):
    lower: float
    upper: float
    median: float
    q1: float
    q3: float


def iqr_bounds(values: Sequence[float], iqr_k: float = 1.5) -> Optional[IQRBounds]:
    """
    Quartile bounds over the strictly positive, finite values.

    Returns None when no positive value exists. Quartiles use pandas' linear
    interpolation.
    """
    s = pd.to_numeric(pd.Series(values, dtype="float64"), errors="coerce")
    s = s[np.isfinite(s) & (s > 0)]
    if s.empty:
        return None
    q1 = float(s.quantile(0.25))
    q3 = float(s.quantile(0.75))
    iqr = q3 - q1
    return IQRBounds(
        lower=q1 - iqr_k * iqr,
        upper=q3 + iqr_k * iqr,
        median=float(s.median()),
        q1=q1,
        q3=q3,
    )


def build_validity_mask(
    series: Sequence[float], params: Optional[EngineParams] = None
) -> np.ndarray:
    """
    Boolean mask, True where the month is usable for fitting.

    Behavior:
    - Fewer than params.min_positive_for_iqr positive values: all False.
    - IQR pass: valid iff value > 0 and lower <= value <= upper (both inclusive).
    - Rescue pass over the last params.rescue_window months, oldest first: average the
      already-valid months in the trailing params.rescue_lookback window (current month
      included); with at least params.rescue_min_points of them, a value within
      +-params.rescue_tolerance of that average becomes valid. Rescued months count as
      valid for later rescue windows.
    """
    params = params or EngineParams()
    raw = np.asarray(series, dtype=float)
    # NaN/inf are treated as missing, never valid
    raw = np.where(np.isfinite(raw), raw, 0.0)
    n = len(raw)
    mask = np.zeros(n, dtype=bool)

    positive_count = int(np.count_nonzero(raw > 0))
    if positive_count < params.min_positive_for_iqr:
        logger.debug(
            "Only %d positive values (< %d); mask degenerates to all invalid",
            positive_count,
            params.min_positive_for_iqr,
        )
        return mask

    bounds = iqr_bounds(raw, params.iqr_k)
    mask = (raw > 0) & (raw >= bounds.lower) & (raw <= bounds.upper)
    iqr_valid = int(mask.sum())

    rescue_start = max(0, n - params.rescue_window)
    for i in range(rescue_start, n):
        if mask[i] or raw[i] <= 0:
            continue
        lo = max(0, i - params.rescue_lookback + 1)
        window = raw[lo : i + 1][mask[lo : i + 1]]
        if len(window) < params.rescue_min_points:
            continue
        ma = float(window.mean())
        if ma * (1 - params.rescue_tolerance) <= raw[i] <= ma * (1 + params.rescue_tolerance):
            mask[i] = True

    logger.debug(
        "Mask: bounds=[%.3f, %.3f] iqr_valid=%d rescued=%d of n=%d",
        bounds.lower,
        bounds.upper,
        iqr_valid,
        int(mask.sum()) - iqr_valid,
        n,
    )
    return mask
