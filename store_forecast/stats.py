"""
Descriptive statistics derived from a fitted entity and across entities.

Every ratio checks its denominator and substitutes 0 instead of propagating
NaN/inf.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence

import numpy as np
import pandas as pd

from .models import DerivedStats, EntityModel


def compute_derived_stats(raw: Sequence[float], mask: Sequence[bool]) -> DerivedStats:
    """
    Totals, YoY, 3-year CAGR, CV/skewness over valid values and Z-chart rows.

    - yoy: (last 12 months - previous 12) / previous 12, needs 24 months.
    - cagr: (last 12 / months -36..-25)^(1/3) - 1, needs 36 months and positive sums.
    - z_chart: monthly value, running cumulative total and 12-month moving annual
      total (0 until 12 months are available).
    """
    s = pd.Series(np.asarray(raw, dtype=float))
    n = len(s)
    if n == 0:
        return DerivedStats()
    valid = s[np.asarray(mask, dtype=bool)]

    last_year = float(s.iloc[-12:].sum())
    prev_year = float(s.iloc[-24:-12].sum()) if n >= 24 else 0.0
    yoy = (last_year - prev_year) / prev_year if prev_year > 0 else 0.0

    cagr = 0.0
    if n >= 36:
        start = float(s.iloc[-36:-24].sum())
        if start > 0 and last_year > 0:
            cagr = (last_year / start) ** (1 / 3) - 1

    cv = 0.0
    skewness = 0.0
    if len(valid) > 0:
        mean = float(valid.mean())
        std = float(valid.std(ddof=0))
        cv = std / mean if mean > 0 else 0.0
        if std > 0:
            skewness = float((((valid - mean) / std) ** 3).mean())

    mat = s.rolling(12).sum().fillna(0.0)
    z_chart = [
        {"monthly": float(m), "cumulative": float(c), "mat": float(a)}
        for m, c, a in zip(s, s.cumsum(), mat)
    ]

    return DerivedStats(
        total=float(s.sum()),
        last_year=last_year,
        prev_year=prev_year,
        yoy=yoy,
        cagr=cagr,
        cv=cv,
        skewness=skewness,
        z_chart=z_chart,
    )


def assign_abc_ranks(models: Iterable[EntityModel]) -> Dict[str, str]:
    """
    Pareto ranking by last-year sales: cumulative share <= 0.70 -> A, <= 0.90 -> B,
    else C. Writes the rank into each model's derived stats and returns {name: rank}.
    """
    ordered = sorted(models, key=lambda m: m.derived_stats.last_year, reverse=True)
    total = sum(m.derived_stats.last_year for m in ordered)
    ranks: Dict[str, str] = {}
    running = 0.0
    for m in ordered:
        running += m.derived_stats.last_year
        share = running / total if total > 0 else 1.0
        if share <= 0.70:
            rank = "A"
        elif share <= 0.90:
            rank = "B"
        else:
            rank = "C"
        m.derived_stats.abc_rank = rank
        ranks[m.name] = rank
    return ranks


def gini_coefficient(values: Sequence[float]) -> float:
    """Gini coefficient of non-negative values; 0.0 when empty or the total is 0."""
    x = np.sort(np.asarray(values, dtype=float))
    n = x.size
    total = float(x.sum())
    if n == 0 or total <= 0:
        return 0.0
    ranks = np.arange(1, n + 1, dtype=float)
    return float(2 * np.dot(ranks, x) / (n * total) - (n + 1) / n)


def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson r over the common prefix; 0.0 for fewer than 2 points or zero variance."""
    n = min(len(x), len(y))
    if n < 2:
        return 0.0
    a = np.asarray(x[:n], dtype=float)
    b = np.asarray(y[:n], dtype=float)
    da = a - a.mean()
    db = b - b.mean()
    den = float(np.sqrt(np.dot(da, da) * np.dot(db, db)))
    return float(np.dot(da, db) / den) if den > 0 else 0.0


def correlation_matrix(series: Dict[str, Sequence[float]], window: int = 12) -> pd.DataFrame:
    """Pairwise Pearson r over the last `window` months of each named series."""
    names: List[str] = list(series)
    out = pd.DataFrame(index=names, columns=names, dtype=float)
    for a in names:
        for b in names:
            out.loc[a, b] = pearson_correlation(
                list(series[a])[-window:], list(series[b])[-window:]
            )
    return out
