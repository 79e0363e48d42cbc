from __future__ import annotations

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from .models import FitResult, project_array

logger = logging.getLogger(__name__)


def normalize_profile(profile: Sequence[float]) -> np.ndarray:
    """Divide a 12-vector by its mean; a non-positive or non-finite mean yields all ones."""
    arr = np.asarray(profile, dtype=float)
    mean = float(arr.mean()) if arr.size else 0.0
    if arr.size != 12 or not np.isfinite(mean) or mean <= 0:
        return np.ones(12)
    return arr / mean


def extract_seasonality(
    raw: Sequence[float],
    mask: Sequence[bool],
    months: Sequence[int],
    fit: FitResult,
) -> np.ndarray:
    """
    Mean-normalized median trend ratio per calendar month.

    For every valid month where the fitted trend exceeds 1, ratio = actual / trend.
    Ratios are grouped by calendar month (0=Jan) and the median taken; months with
    no ratio default to 1.0. The result is divided by its own mean.
    """
    raw = np.asarray(raw, dtype=float)
    mask = np.asarray(mask, dtype=bool)
    t = np.arange(len(raw), dtype=float)
    trend = project_array(t, fit.params, fit.mode, fit.break_index, fit.break_index2)

    usable = mask & (trend > 1)
    df = pd.DataFrame(
        {
            "month": np.asarray(months, dtype=int)[usable],
            "ratio": raw[usable] / trend[usable],
        }
    )
    medians = df.groupby("month")["ratio"].median().reindex(range(12), fill_value=1.0)
    profile = normalize_profile(medians.to_numpy(dtype=float))
    logger.debug("Seasonal profile from %d ratios: %s", len(df), np.round(profile, 4))
    return profile
