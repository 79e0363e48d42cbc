"""
Text report and manifest assembly for a batch run.
"""

from __future__ import annotations

import math
from typing import Dict, List, Optional

import numpy as np
import pandas as pd

from .batch import BatchResult
from .engine import reconstruct
from .models import EntityModel, FitMode
from .stats import correlation_matrix, gini_coefficient
from .utils import utc_timestamp_seconds


def _fmt_fixed(x: Optional[float], width: int, decimals: int) -> str:
    """
    Fixed notation right-aligned in width; '-' centered when x is None or not finite.
    """
    if x is None:
        s = "-"
    else:
        try:
            xf = float(x)
            s = f"{xf:.{decimals}f}" if math.isfinite(xf) else "-"
        except (TypeError, ValueError):
            s = "-"
    if s == "-":
        return s.center(width)
    return s.rjust(width)


def build_model_comparison(result: BatchResult) -> tuple[str, str]:
    """
    Per-mode comparison table and the most frequently selected mode.

    Columns: Mode, Fitted (entities where the mode was a candidate), Selected, Share of
    fitted entities, median AIC among candidates, median AIC delta vs standard (negative
    means the mode improved on the standard curve).

    Returns:
        (dominant_mode_label, table_text)
    """
    fitted_models = [m for m in result.models.values() if m.forecastable]
    rows: List[tuple] = []
    counts: Dict[str, int] = {}
    for mode in FitMode:
        aics = [
            m.fit.candidate_aic[mode.label]
            for m in fitted_models
            if mode.label in m.fit.candidate_aic
        ]
        deltas = [
            m.fit.candidate_aic[mode.label] - m.fit.candidate_aic[FitMode.STANDARD.label]
            for m in fitted_models
            if mode.label in m.fit.candidate_aic
            and FitMode.STANDARD.label in m.fit.candidate_aic
            and mode is not FitMode.STANDARD
        ]
        selected = sum(1 for m in fitted_models if m.fit.mode is mode)
        counts[mode.label] = selected
        share = selected / len(fitted_models) if fitted_models else None
        rows.append(
            (
                mode.label,
                f"{len(aics):>8d}",
                f"{selected:>8d}",
                _fmt_fixed(share, 8, 3),
                _fmt_fixed(float(np.median(aics)) if aics else None, 12, 2),
                _fmt_fixed(float(np.median(deltas)) if deltas else None, 12, 2),
            )
        )

    headers = ("Mode", "Fitted", "Selected", "Share", "Median AIC", "Median dAIC")
    col0 = max(len(headers[0]), max(len(r[0]) for r in rows))
    header_line = (
        f"{headers[0]:<{col0}}  {headers[1]:>8}  {headers[2]:>8}  "
        f"{headers[3]:>8}  {headers[4]:>12}  {headers[5]:>12}"
    )
    lines = ["Model Comparison (AIC by curve variant)", header_line, "-" * len(header_line)]
    for r in rows:
        lines.append(f"{r[0]:<{col0}}  {r[1]}  {r[2]}  {r[3]}  {r[4]}  {r[5]}")

    dominant = max(counts, key=lambda k: (counts[k], -list(counts).index(k)))
    lines.append("")
    lines.append(f"Most selected mode: {dominant}")
    lines.append("")
    return dominant, "\n".join(lines)


def build_manifest_dict(
    abs_input_posix: str,
    counts: dict,
    effective_params: dict,
    hashes: tuple[str, str],
    artifact_paths: list[str],
) -> dict:
    short_hash, full_hash = hashes
    return {
        "version": "1",
        "timestamp_utc": utc_timestamp_seconds(),
        "absolute_input_path": abs_input_posix,
        "total_input_rows": int(counts.get("total_input_rows", 0)),
        "entity_count": int(counts.get("entity_count", 0)),
        "pass_one_count": int(counts.get("pass_one_count", 0)),
        "pass_two_count": int(counts.get("pass_two_count", 0)),
        "insufficient_count": int(counts.get("insufficient_count", 0)),
        "error_count": int(counts.get("error_count", 0)),
        "effective_parameters": effective_params,
        "canonical_hash": full_hash,
        "canonical_hash_short": short_hash,
        "artifacts": list(artifact_paths),
    }


def in_sample_mape(model: EntityModel) -> float:
    """MAPE (%) of the reconstructed fit over valid months with positive actuals; nan if none."""
    actual = np.asarray(model.series, dtype=float)
    fitted = reconstruct(model)
    keep = np.asarray(model.mask, dtype=bool) & (actual > 0)
    if actual.size == 0 or not keep.any():
        return float("nan")
    return float(np.mean(np.abs(fitted[keep] - actual[keep]) / actual[keep]) * 100.0)


def assemble_text_report(
    result: BatchResult,
    table_text: str,
    dominant_mode: str,
    backtest: Optional[pd.DataFrame] = None,
    top_n: int = 10,
    corr_n: int = 5,
) -> str:
    """
    Readable run summary: entity counts, global summary, the comparison table, the
    largest entities by last-year total (with in-sample fit MAPE), a correlation matrix
    of the largest corr_n and, when present, backtest accuracy.
    """
    models = list(result.models.values())
    fitted = [m for m in models if m.forecastable]
    s = result.global_summary
    out: List[str] = []
    out.append("=== Run summary ===")
    out.append(f"Entities: {len(models)} (pass one {len(result.pass_one)}, pass two {len(result.pass_two)})")
    out.append(f"Fitted: {len(fitted)}")
    out.append(f"Insufficient data: {sum(1 for m in models if m.insufficient_data)}")
    out.append(f"Errors: {sum(1 for m in models if m.error)}")
    out.append(f"Active: {sum(1 for m in models if m.is_active)}")
    out.append(f"Global max date: {result.global_max_date}")
    out.append(
        "Gini (last-year totals): "
        f"{gini_coefficient([m.derived_stats.last_year for m in models]):.3f}"
    )
    out.append("")
    out.append("=== Global summary (pass one) ===")
    out.append(f"median k: {s.median_k:.4f}")
    out.append(f"median growth L: {s.median_growth:.2f}")
    out.append("median seasonality: " + ", ".join(f"{v:.3f}" for v in s.median_seasonality))
    out.append(f"entities: {s.n_entities}")
    out.append("")
    out.append(table_text)

    out.append(f"=== Top {top_n} entities by last-year total ===")
    ranked = sorted(fitted, key=lambda m: m.derived_stats.last_year, reverse=True)[:top_n]
    if ranked:
        df = pd.DataFrame(
            [
                {
                    "name": m.name,
                    "mode": m.fit.mode.label,
                    "abc": m.derived_stats.abc_rank,
                    "last_year": round(m.derived_stats.last_year, 1),
                    "yoy": round(m.derived_stats.yoy, 4),
                    "k": round(m.fit.params.k, 4),
                    "L": round(m.fit.params.L, 1),
                    "nudge": round(m.correction.nudge, 2),
                    "decay": round(m.correction.nudge_decay, 3),
                    "fit_mape": round(in_sample_mape(m), 2),
                }
                for m in ranked
            ]
        )
        out.append(df.to_string(index=False))
    else:
        out.append("(none)")
    out.append("")

    corr_names = [m.name for m in ranked[:corr_n]]
    if len(corr_names) >= 2:
        out.append(f"=== Correlation of top {len(corr_names)} entities (last 12 months) ===")
        corr = correlation_matrix({n: result.models[n].series for n in corr_names})
        out.append(corr.round(3).to_string())
        out.append("")

    if backtest is not None:
        out.append("=== Backtest ===")
        if backtest.empty:
            out.append("(no eligible entities)")
        else:
            out.append(f"Entities scored: {len(backtest)}")
            out.append(f"Median MAPE: {backtest['mape'].median():.2f}%")
            out.append(f"Median RMSE: {backtest['rmse'].median():.2f}")
            out.append(f"Mean bias: {backtest['bias'].mean():.2f}")
        out.append("")

    out.append(f"Dominant curve variant: {dominant_mode}")
    return "\n".join(out)
