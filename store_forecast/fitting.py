"""
Curve fitting and model selection.

Every variant is fit by minimizing the masked mean squared error with the
Nelder-Mead optimizer. Constraints are expressed as a penalty sentinel inside the
objective so the optimizer simply moves away from infeasible regions. Candidates
are compared by AIC.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from .breaks import BreakScan, detect_breaks
from .config import EngineParams
from .models import FitMode, FitParameters, FitResult, GlobalSummary, project_array
from .optimizer import nelder_mead

logger = logging.getLogger(__name__)


def estimate_baseline(
    raw: Sequence[float], mask: Sequence[bool], params: Optional[EngineParams] = None
) -> float:
    """
    Mean of the first params.baseline_points valid values (fewer if fewer exist),
    clamped to params.baseline_cap_ratio * max(valid values). 0.0 without valid values.
    """
    params = params or EngineParams()
    raw = np.asarray(raw, dtype=float)
    valid = raw[np.asarray(mask, dtype=bool)]
    if valid.size == 0:
        return 0.0
    base = float(valid[: params.baseline_points].mean())
    return min(base, params.baseline_cap_ratio * float(valid.max()))


def compute_aic(sse: float, n: int, k: int, sse_floor: float = 1e-12) -> float:
    """
    AIC = n*ln(SSE/n) + 2k.

    SSE is floored at sse_floor * n so an exact fit stays finite. n <= 0 -> +inf.
    """
    if n <= 0:
        return math.inf
    sse = max(float(sse), sse_floor * n)
    return n * math.log(sse / n) + 2 * k


@dataclass(frozen=True)
class FitBounds:
    min_k: float
    max_k: float
    max_L: float


def fit_bounds(
    base: float,
    observed_max: float,
    n_valid: int,
    params: EngineParams,
    global_summary: Optional[GlobalSummary] = None,
) -> FitBounds:
    """
    Feasible region for (k, L).

    k defaults to [params.min_k, params.max_k]; with a global summary and a short history
    (min_valid_months..tight_k_max_valid valid months) it is tightened to
    median_k * (1 -+ tight_k_ratio). L spans [0, l_cap_multiplier * max(0, observed_max - base)].
    """
    min_k, max_k = params.min_k, params.max_k
    if (
        global_summary is not None
        and global_summary.median_k > 0
        and params.min_valid_months <= n_valid <= params.tight_k_max_valid
    ):
        min_k = global_summary.median_k * (1 - params.tight_k_ratio)
        max_k = global_summary.median_k * (1 + params.tight_k_ratio)
    max_L = params.l_cap_multiplier * max(0.0, observed_max - base)
    return FitBounds(min_k=min_k, max_k=max_k, max_L=max_L)


class CurveObjective:
    """
    Masked MSE of one curve variant, callable on an optimizer vector.

    Returns params.penalty (never raises) when the vector is non-finite, k leaves its
    bounds (except for STARTUP, whose k is fixed), L leaves [0, max_L], or there are no
    valid months.
    """

    def __init__(
        self,
        raw: np.ndarray,
        mask: np.ndarray,
        mode: FitMode,
        base: float,
        bounds: FitBounds,
        params: EngineParams,
        break_index: int = -1,
        break_index2: Optional[int] = None,
        fixed_k: Optional[float] = None,
    ) -> None:
        mask = np.asarray(mask, dtype=bool)
        self.t = np.flatnonzero(mask).astype(float)
        self.y = np.asarray(raw, dtype=float)[mask]
        self.mode = mode
        self.base = float(base)
        self.bounds = bounds
        self.penalty = float(params.penalty)
        self.break_index = break_index
        self.break_index2 = break_index2
        self.fixed_k = fixed_k

    @property
    def n(self) -> int:
        return int(self.y.size)

    def to_params(self, x: np.ndarray) -> FitParameters:
        return FitParameters.from_vector(self.mode, x, self.base, self.fixed_k)

    def sse(self, p: FitParameters) -> float:
        pred = project_array(self.t, p, self.mode, self.break_index, self.break_index2)
        err = self.y - pred
        return float(np.dot(err, err))

    def __call__(self, x: np.ndarray) -> float:
        if self.n == 0 or not np.all(np.isfinite(x)):
            return self.penalty
        p = self.to_params(x)
        if self.mode is not FitMode.STARTUP and not (
            self.bounds.min_k <= p.k <= self.bounds.max_k
        ):
            return self.penalty
        if not (0.0 <= p.L <= self.bounds.max_L):
            return self.penalty
        mse = self.sse(p) / self.n
        if not math.isfinite(mse):
            return self.penalty
        return mse


@dataclass(frozen=True)
class CandidateFit:
    mode: FitMode
    params: FitParameters
    sse: float
    n: int
    aic: float
    iterations: int
    break_index: int = -1
    break_index2: Optional[int] = None


def fit_variant(
    raw: np.ndarray,
    mask: np.ndarray,
    mode: FitMode,
    base: float,
    x0: Sequence[float],
    bounds: FitBounds,
    params: EngineParams,
    break_index: int = -1,
    break_index2: Optional[int] = None,
    fixed_k: Optional[float] = None,
) -> CandidateFit:
    """Optimize one variant from x0 and score it; SSE is the pure residual sum of squares."""
    objective = CurveObjective(
        raw,
        mask,
        mode,
        base,
        bounds,
        params,
        break_index=break_index,
        break_index2=break_index2,
        fixed_k=fixed_k,
    )
    res = nelder_mead(
        objective,
        x0,
        max_iterations=params.max_iterations,
        f_tolerance=params.f_tolerance,
        step=params.simplex_step,
        zero_step=params.simplex_zero_step,
    )
    fitted = objective.to_params(res.x)
    sse = objective.sse(fitted)
    aic = compute_aic(sse, objective.n, mode.param_count, params.aic_sse_floor)
    logger.debug(
        "Fit %s: sse=%.6g n=%d aic=%.4f iterations=%d",
        mode.label,
        sse,
        objective.n,
        aic,
        res.iterations,
    )
    return CandidateFit(
        mode=mode,
        params=fitted,
        sse=sse,
        n=objective.n,
        aic=aic,
        iterations=res.iterations,
        break_index=break_index,
        break_index2=break_index2,
    )


def _usable_break(mask: np.ndarray, index: int, min_side: int) -> bool:
    return (
        int(np.count_nonzero(mask[:index])) >= min_side
        and int(np.count_nonzero(mask[index:])) >= min_side
    )


def _to_result(best: CandidateFit, candidates: List[CandidateFit]) -> FitResult:
    return FitResult(
        mode=best.mode,
        params=best.params,
        break_index=best.break_index,
        break_index2=best.break_index2,
        aic=best.aic,
        sse=best.sse,
        n_valid=best.n,
        iterations=best.iterations,
        candidate_aic={c.mode.label: c.aic for c in candidates},
    )


def select_model(
    raw: Sequence[float],
    mask: Sequence[bool],
    dates: Sequence[str],
    params: Optional[EngineParams] = None,
    global_summary: Optional[GlobalSummary] = None,
    breaks: Optional[BreakScan] = None,
) -> FitResult:
    """
    Fit the candidate variants for an entity with enough history and keep the lowest AIC.

    Candidates:
    - STANDARD, always.
    - SHIFT, when the single break (general scan, else fixed date) has at least
      params.break_min_side valid months on each side. Starts from the standard solution
      plus the break's level-change guess.
    - DUAL_SHIFT, when a fixed-date break and a distinct secondary break both exist.
      Break 1 is the fixed date.

    Ties keep the simpler (earlier) candidate.
    """
    params = params or EngineParams()
    raw = np.asarray(raw, dtype=float)
    mask = np.asarray(mask, dtype=bool)
    n = len(raw)
    n_valid = int(mask.sum())

    base = estimate_baseline(raw, mask, params)
    observed_max = float(raw[mask].max()) if n_valid else 0.0
    bounds = fit_bounds(base, observed_max, n_valid, params, global_summary)
    if breaks is None:
        breaks = detect_breaks(raw, mask, dates, params)

    k0 = min(max(params.initial_k, bounds.min_k), bounds.max_k)
    L0 = max(observed_max - base, 0.0)
    std = fit_variant(raw, mask, FitMode.STANDARD, base, [L0, k0, n / 2.0], bounds, params)
    candidates: List[CandidateFit] = [std]
    std_x = [std.params.L, std.params.k, std.params.t0]

    single = breaks.single
    if single is not None and _usable_break(mask, single.index, params.break_min_side):
        candidates.append(
            fit_variant(
                raw,
                mask,
                FitMode.SHIFT,
                base,
                std_x + [single.shift_guess],
                bounds,
                params,
                break_index=single.index,
            )
        )

    dual = breaks.dual
    if dual is not None:
        first, second = dual
        candidates.append(
            fit_variant(
                raw,
                mask,
                FitMode.DUAL_SHIFT,
                base,
                std_x + [first.shift_guess, second.shift_guess],
                bounds,
                params,
                break_index=first.index,
                break_index2=second.index,
            )
        )

    best = candidates[0]
    for cand in candidates[1:]:
        if cand.aic < best.aic:
            best = cand
    logger.debug(
        "Selected %s among %s",
        best.mode.label,
        {c.mode.label: round(c.aic, 4) for c in candidates},
    )
    return _to_result(best, candidates)


def fit_startup(
    raw: Sequence[float],
    mask: Sequence[bool],
    global_summary: GlobalSummary,
    params: Optional[EngineParams] = None,
) -> FitResult:
    """
    Two-parameter fit (L, t0) for a short history with k copied from the global summary.

    The optimizer never sees k, so the returned k equals global_summary.median_k exactly.
    L starts at the global median growth capacity clipped into its bounds (or the observed
    growth when no median is available), t0 at params.startup_t0.
    """
    params = params or EngineParams()
    raw = np.asarray(raw, dtype=float)
    mask = np.asarray(mask, dtype=bool)
    n_valid = int(mask.sum())

    base = estimate_baseline(raw, mask, params)
    observed_max = float(raw[mask].max()) if n_valid else 0.0
    bounds = fit_bounds(base, observed_max, n_valid, params)
    fixed_k = float(global_summary.median_k)

    if global_summary.median_growth > 0:
        L0 = min(global_summary.median_growth, bounds.max_L)
    else:
        L0 = max(observed_max - base, 0.0)

    cand = fit_variant(
        raw,
        mask,
        FitMode.STARTUP,
        base,
        [L0, params.startup_t0],
        bounds,
        params,
        fixed_k=fixed_k,
    )
    return _to_result(cand, [cand])

