"""
Two-pass multi-entity runner.

pass one: fit every entity with a long valid history (independent, parallelizable)
reduce:   build_global_summary() over the active pass-one models
pass two: fit the remaining (growth and startup) entities with that summary as a prior

The summary is fully materialized before pass two starts.
"""

from __future__ import annotations

import logging
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .config import BatchParams, EngineParams
from .engine import FORECAST_COLUMNS, failed_model, fit_entity, forecast_entity
from .models import EntityModel, GlobalSummary
from .outliers import build_validity_mask
from .seasonality import normalize_profile
from .stats import assign_abc_ranks
from .timeline import normalize_month, parse_month

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ("store", "date", "value")


@dataclass
class EntityInput:
    name: str
    series: List[float]
    dates: List[str]
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class BatchResult:
    models: Dict[str, EntityModel]
    global_summary: GlobalSummary
    global_max_date: str
    pass_one: List[str] = field(default_factory=list)
    pass_two: List[str] = field(default_factory=list)


def prepare_entities(
    df: pd.DataFrame,
    metadata_columns: Sequence[str] = ("block", "region", "prefecture"),
) -> Tuple[List[EntityInput], str]:
    """
    Turn a long frame (store, date, value[, metadata...]) into contiguous monthly series.

    Behavior:
    - Dates are normalized to monthly periods; rows with unparseable dates or
      non-numeric values are dropped (logged).
    - Duplicate (store, month) rows are summed.
    - Each store is reindexed over its own first..last month; missing months become 0.
    - Metadata comes from the first row of each store for the columns present.

    Returns:
        (entities, global_max_date as 'YYYY-MM')
    """
    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"Input is missing required columns: {missing}")

    work = df.copy()
    work["store"] = work["store"].astype(str).str.strip()
    work["value"] = pd.to_numeric(work["value"], errors="coerce")

    def _safe_period(v: Any) -> Optional[pd.Period]:
        try:
            return parse_month(v)
        except ValueError:
            return None

    work["period"] = work["date"].map(_safe_period)
    bad = work["period"].isna() | work["value"].isna() | (work["store"] == "")
    if bad.any():
        logger.info("Dropping %d rows with unparseable date/value/store", int(bad.sum()))
    work = work.loc[~bad]
    if work.empty:
        raise ValueError("No usable rows in input")

    global_max = max(work["period"])
    meta_cols = [c for c in metadata_columns if c in work.columns]

    entities: List[EntityInput] = []
    for name, grp in work.groupby("store", sort=True):
        monthly = grp.groupby("period")["value"].sum()
        monthly.index = pd.PeriodIndex(monthly.index, freq="M")
        full = pd.period_range(min(monthly.index), max(monthly.index), freq="M")
        monthly = monthly.reindex(full, fill_value=0.0)
        meta = {c: grp[c].iloc[0] for c in meta_cols}
        entities.append(
            EntityInput(
                name=str(name),
                series=[float(v) for v in monthly.to_numpy()],
                dates=[p.strftime("%Y-%m") for p in full],
                metadata=meta,
            )
        )
    logger.info("Prepared %d entities; global max date %s", len(entities), global_max)
    return entities, global_max.strftime("%Y-%m")


def build_global_summary(
    models: Sequence[EntityModel], params: Optional[EngineParams] = None
) -> GlobalSummary:
    """
    Reduce pass-one models into priors for growth and startup entities.

    median_k: median k over fitted models (params.default_global_k when none, or when the
    median is not positive); median_seasonality: per-month median of the seasonal profiles,
    renormalized to mean 1; median_growth: median L.
    """
    params = params or EngineParams()
    fitted = [m for m in models if m.forecastable]
    if not fitted:
        return GlobalSummary(
            median_k=params.default_global_k,
            median_seasonality=tuple(np.ones(12)),
            median_growth=0.0,
            n_entities=0,
        )
    ks = np.array([m.fit.params.k for m in fitted], dtype=float)
    median_k = float(np.median(ks))
    if not np.isfinite(median_k) or median_k <= 0:
        median_k = params.default_global_k
    profiles = np.vstack([np.asarray(m.seasonal, dtype=float) for m in fitted])
    seasonality = normalize_profile(np.median(profiles, axis=0))
    growth = float(np.median([m.fit.params.L for m in fitted]))
    return GlobalSummary(
        median_k=median_k,
        median_seasonality=tuple(float(v) for v in seasonality),
        median_growth=growth,
        n_entities=len(fitted),
    )


def _fit_one(
    item: EntityInput,
    global_max_date: str,
    global_summary: Optional[GlobalSummary],
    params: EngineParams,
) -> EntityModel:
    try:
        return fit_entity(
            item.name,
            item.series,
            item.dates,
            global_max_date,
            global_summary=global_summary,
            metadata=item.metadata,
            params=params,
        )
    except Exception as e:
        logger.exception("Fit failed for %s", item.name)
        return failed_model(item.name, item.series, item.dates, str(e), item.metadata)


def _map_fit(
    items: Sequence[EntityInput],
    global_max_date: str,
    global_summary: Optional[GlobalSummary],
    params: EngineParams,
    max_workers: int,
) -> List[EntityModel]:
    if max_workers > 1 and len(items) > 1:
        with ProcessPoolExecutor(max_workers=max_workers) as pool:
            futures = [
                pool.submit(_fit_one, item, global_max_date, global_summary, params)
                for item in items
            ]
            return [f.result() for f in futures]
    return [_fit_one(item, global_max_date, global_summary, params) for item in items]


def run_batch(
    entities: Sequence[EntityInput],
    global_max_date: str,
    params: Optional[EngineParams] = None,
    batch_params: Optional[BatchParams] = None,
) -> BatchResult:
    """
    Fit every entity in two passes and rank them.

    Entities are split by the number of valid months of their validity mask:
    more than params.tight_k_max_valid go to pass one. Growth entities
    (min_valid_months..tight_k_max_valid) and startup entities go to pass two, where
    the summary narrows k or fixes it.
    """
    params = params or EngineParams()
    batch_params = batch_params or BatchParams()
    global_max_date = normalize_month(global_max_date)

    mature: List[EntityInput] = []
    growth: List[EntityInput] = []
    startup: List[EntityInput] = []
    for item in entities:
        n_valid = int(build_validity_mask(item.series, params).sum())
        if n_valid > params.tight_k_max_valid:
            mature.append(item)
        elif n_valid >= params.min_valid_months:
            growth.append(item)
        else:
            startup.append(item)
    logger.info(
        "Pass one: %d entities; pass two: %d growth and %d startup entities",
        len(mature),
        len(growth),
        len(startup),
    )

    models: Dict[str, EntityModel] = {}
    pass_one = _map_fit(mature, global_max_date, None, params, batch_params.max_workers)
    for m in pass_one:
        models[m.name] = m

    summary = build_global_summary(
        [m for m in pass_one if m.is_active] or pass_one, params
    )
    logger.info(
        "Global summary: median_k=%.4f median_growth=%.2f from %d entities",
        summary.median_k,
        summary.median_growth,
        summary.n_entities,
    )

    pass_two = _map_fit(
        growth + startup, global_max_date, summary, params, batch_params.max_workers
    )
    for m in pass_two:
        models[m.name] = m

    assign_abc_ranks(models.values())
    return BatchResult(
        models=models,
        global_summary=summary,
        global_max_date=global_max_date,
        pass_one=[m.name for m in pass_one],
        pass_two=[m.name for m in pass_two],
    )


def models_to_frame(models: Dict[str, EntityModel]) -> pd.DataFrame:
    """One row per entity: fit diagnostics, correction, headline stats and metadata."""
    rows = []
    for m in models.values():
        p = m.fit.params
        row: Dict[str, Any] = {
            "name": m.name,
            "mode": m.fit.mode.label,
            "is_active": m.is_active,
            "insufficient_data": m.insufficient_data,
            "error": m.error,
            "message": m.message,
            "n_months": len(m.series),
            "n_valid": m.n_valid,
            "first_date": m.dates[0] if m.dates else None,
            "last_date": m.dates[-1] if m.dates else None,
            "base": p.base,
            "L": p.L,
            "k": p.k,
            "t0": p.t0,
            "shift": p.shift,
            "shift2": p.shift2,
            "break_index": m.fit.break_index,
            "break_index2": m.fit.break_index2,
            "aic": m.fit.aic,
            "nudge": m.correction.nudge,
            "nudge_decay": m.correction.nudge_decay,
            "std_dev": m.std_dev,
            "last_year": m.derived_stats.last_year,
            "yoy": m.derived_stats.yoy,
            "cagr": m.derived_stats.cagr,
            "cv": m.derived_stats.cv,
            "abc_rank": m.derived_stats.abc_rank,
        }
        for i, v in enumerate(m.seasonal):
            row[f"seasonal_{i + 1:02d}"] = float(v)
        row.update({f"meta_{k}": v for k, v in m.metadata.items()})
        rows.append(row)
    return pd.DataFrame(rows)


def forecasts_to_frame(
    models: Dict[str, EntityModel], horizon: int, params: Optional[EngineParams] = None
) -> pd.DataFrame:
    """Concatenated forecast frames for every forecastable, active entity."""
    frames = [
        forecast_entity(m, horizon, params)
        for m in models.values()
        if m.forecastable and m.is_active
    ]
    frames = [f for f in frames if not f.empty]
    if not frames:
        return pd.DataFrame(columns=FORECAST_COLUMNS)
    return pd.concat(frames, ignore_index=True)
