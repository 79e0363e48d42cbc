"""
Nelder-Mead simplex minimizer used by every curve variant.

Thin layer over scipy.optimize.minimize(method="Nelder-Mead"): the initial simplex
is built explicitly (start point plus one relative perturbation per dimension) and
the stop rule is reduced to the objective spread |worst - best| by disabling the
x-tolerance. scipy's non-adaptive coefficients are the textbook ones
(reflection 1, expansion 2, contraction 0.5, shrink 0.5).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np
from scipy.optimize import minimize

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OptimizerResult:
    x: np.ndarray
    fun: float
    iterations: int
    converged: bool
    message: str


def initial_simplex(
    x0: Sequence[float], step: float = 0.05, zero_step: float = 0.001
) -> np.ndarray:
    """
    (dim + 1, dim) simplex: x0 followed by x0 with coordinate i scaled by (1 + step),
    or set to zero_step when that coordinate is exactly zero.
    """
    x0 = np.asarray(x0, dtype=float)
    dim = x0.size
    sim = np.tile(x0, (dim + 1, 1))
    for i in range(dim):
        sim[i + 1, i] = zero_step if x0[i] == 0 else x0[i] * (1 + step)
    return sim


def nelder_mead(
    objective: Callable[[np.ndarray], float],
    x0: Sequence[float],
    max_iterations: int = 2500,
    f_tolerance: float = 1e-5,
    step: float = 0.05,
    zero_step: float = 0.001,
) -> OptimizerResult:
    """
    Minimize objective starting from x0.

    Terminates after max_iterations or once the objective spread across the simplex
    drops to f_tolerance. The objective is expected to signal infeasible points with a
    large finite sentinel rather than raising.
    """
    x0 = np.asarray(x0, dtype=float)
    res = minimize(
        objective,
        x0,
        method="Nelder-Mead",
        options={
            "initial_simplex": initial_simplex(x0, step, zero_step),
            "maxiter": int(max_iterations),
            "fatol": float(f_tolerance),
            "xatol": np.inf,
            "adaptive": False,
        },
    )
    if not res.success:
        logger.debug("Nelder-Mead stopped without converging: %s", res.message)
    return OptimizerResult(
        x=np.asarray(res.x, dtype=float),
        fun=float(res.fun),
        iterations=int(res.nit),
        converged=bool(res.success),
        message=str(res.message),
    )
