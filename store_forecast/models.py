"""
Data model for the growth-curve engine.

Holds the closed set of curve variants (FitMode), the parameter/result containers
produced by a fit, and the pure projection function shared by in-sample
reconstruction and forecasting.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from scipy.special import expit


class FitMode(Enum):
    """
    Curve variants. Each member carries its free-parameter names (in optimizer
    vector order); the parameter count used for AIC is len(free_params).

    - STANDARD:   base + L*sigmoid(k(t-t0))
    - SHIFT:      standard + shift*[t >= break_index]
    - DUAL_SHIFT: shift + shift2*[t >= break_index2]
    - STARTUP:    standard with k fixed externally (only L, t0 optimized)
    """

    STANDARD = ("standard", ("L", "k", "t0"))
    SHIFT = ("shift", ("L", "k", "t0", "shift"))
    DUAL_SHIFT = ("dual_shift", ("L", "k", "t0", "shift", "shift2"))
    STARTUP = ("startup", ("L", "t0"))

    def __init__(self, label: str, free_params: Tuple[str, ...]) -> None:
        self.label = label
        self.free_params = free_params

    @property
    def param_count(self) -> int:
        return len(self.free_params)

    def level(
        self,
        t: np.ndarray,
        params: "FitParameters",
        break_index: int,
        break_index2: Optional[int],
    ) -> np.ndarray:
        """Piecewise-constant baseline (base plus any active shifts) at t."""
        lvl = np.full_like(t, float(params.base), dtype=float)
        if self in (FitMode.SHIFT, FitMode.DUAL_SHIFT) and break_index >= 0:
            lvl = lvl + float(params.shift or 0.0) * (t >= break_index)
        if self is FitMode.DUAL_SHIFT and break_index2 is not None and break_index2 >= 0:
            lvl = lvl + float(params.shift2 or 0.0) * (t >= break_index2)
        return lvl


@dataclass(frozen=True)
class FitParameters:
    base: float = 0.0
    L: float = 0.0
    k: float = 0.0
    t0: float = 0.0
    shift: Optional[float] = None
    shift2: Optional[float] = None

    @classmethod
    def from_vector(
        cls, mode: FitMode, x: np.ndarray, base: float, fixed_k: Optional[float] = None
    ) -> "FitParameters":
        """
        Map an optimizer vector (ordered as mode.free_params) back to named
        parameters. STARTUP takes k from fixed_k.
        """
        values = dict(zip(mode.free_params, (float(v) for v in x)))
        if mode is FitMode.STARTUP:
            values["k"] = float(fixed_k if fixed_k is not None else 0.0)
        return cls(
            base=float(base),
            L=values["L"],
            k=values["k"],
            t0=values["t0"],
            shift=values.get("shift"),
            shift2=values.get("shift2"),
        )

    def ceiling(self) -> float:
        return self.base + self.L + (self.shift or 0.0) + (self.shift2 or 0.0)


@dataclass(frozen=True)
class FitResult:
    mode: FitMode
    params: FitParameters
    break_index: int = -1
    break_index2: Optional[int] = None
    aic: float = 0.0
    sse: float = 0.0
    n_valid: int = 0
    iterations: int = 0
    # AIC of every candidate that was fit, keyed by mode label
    candidate_aic: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ResidualCorrection:
    nudge: float = 0.0
    nudge_decay: float = 0.0


@dataclass(frozen=True)
class GlobalSummary:
    """
    Reduced output of pass one, passed by value into pass two.

    median_growth is the median incremental capacity L across pass-one fits and
    seeds the startup optimizer.
    """

    median_k: float
    median_seasonality: Tuple[float, ...]
    median_growth: float = 0.0
    n_entities: int = 0


@dataclass
class DerivedStats:
    total: float = 0.0
    last_year: float = 0.0
    prev_year: float = 0.0
    yoy: float = 0.0
    cagr: float = 0.0
    cv: float = 0.0
    skewness: float = 0.0
    abc_rank: str = "C"
    z_chart: List[Dict[str, float]] = field(default_factory=list)


@dataclass
class Components:
    trend: np.ndarray
    seasonal: np.ndarray
    residual: np.ndarray


@dataclass
class EntityModel:
    name: str
    series: np.ndarray
    dates: List[str]
    mask: np.ndarray
    is_active: bool
    fit: FitResult
    seasonal: np.ndarray
    correction: ResidualCorrection
    std_dev: float
    derived_stats: DerivedStats
    components: Optional[Components] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    insufficient_data: bool = False
    error: bool = False
    message: Optional[str] = None

    @property
    def n_valid(self) -> int:
        return int(np.count_nonzero(self.mask))

    @property
    def forecastable(self) -> bool:
        return not (self.insufficient_data or self.error)


def project_array(
    t: np.ndarray,
    params: FitParameters,
    mode: FitMode,
    break_index: int = -1,
    break_index2: Optional[int] = None,
) -> np.ndarray:
    """
    Evaluate the fitted curve at month indices t (vectorised).

    The logistic term uses scipy.special.expit so very negative exponents do not
    overflow.
    """
    t = np.asarray(t, dtype=float)
    growth = params.L * expit(params.k * (t - params.t0))
    return mode.level(t, params, break_index, break_index2) + growth


def project(
    t: float,
    params: FitParameters,
    mode: FitMode,
    break_index: int = -1,
    break_index2: Optional[int] = None,
) -> float:
    """Scalar form of project_array for a single month index."""
    return float(
        project_array(np.array([t], dtype=float), params, mode, break_index, break_index2)[0]
    )
