from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple


@dataclass
class EngineParams:
    """
    Tunables for a single-entity fit.

    Attributes:
        iqr_k: IQR multiplier for the outlier bounds (Q1 - k*IQR, Q3 + k*IQR).
        min_positive_for_iqr: fewer strictly positive points than this -> all months invalid.
        rescue_window: number of most recent months eligible for the moving-average rescue.
        rescue_lookback: trailing window length (months, inclusive of the current one).
        rescue_min_points: minimum already-valid months inside the trailing window.
        rescue_tolerance: relative band around the trailing average (0.11 -> +-11%).
        baseline_points: number of leading valid points averaged for the base level.
        baseline_cap_ratio: base is clamped to this fraction of the max valid value.
        min_valid_months: below this many valid months an entity is fit as a startup.
        tight_k_max_valid: entities with min_valid_months..tight_k_max_valid valid months get
            k bounds tightened around the global median when a summary is supplied.
        tight_k_ratio: half-width of the tightened k band relative to the global median.
        event_months: YYYY-MM strings scanned (in order of appearance) for the fixed-date break.
        event_min_side: valid months required on each side of the fixed-date break.
        shift_window: observations on each side of a candidate break in the max-shift scans.
        shift_margin: months skipped at each end of the series in the max-shift scans.
        shift_min_points: valid points required in each scan window.
        shift_threshold: minimum ratio for the general max-shift scan.
        shift_min_length: series shorter than this skip the general scan.
        secondary_threshold: minimum ratio for the secondary scan.
        secondary_exclusion: months around the fixed-date break excluded by the secondary scan.
        secondary_min_length: series shorter than this skip the secondary scan.
        break_min_side: valid months required on each side of a break used for fitting.
        min_k / max_k: default k bounds.
        l_cap_multiplier: L upper bound = multiplier * max(0, observed_max - base).
        penalty: objective value returned for infeasible points.
        initial_k: starting k for the standard fit (clamped into the k bounds).
        startup_t0: starting t0 for the startup fit.
        default_global_k: k used when no pass-one entity produced a summary.
        simplex_step: relative perturbation for the initial simplex.
        simplex_zero_step: absolute perturbation for zero coordinates.
        max_iterations / f_tolerance: Nelder-Mead stop rule.
        aic_sse_floor: SSE floor per observation so a perfect fit keeps a finite AIC.
        nudge_history_short / nudge_history_long: history-length thresholds for the nudge rules.
        nudge_recent_points: residuals averaged for the 6..11 month rule.
        nudge_lookback: residuals considered for the trimmed mean and the autocorrelation.
        nudge_trim: fraction trimmed from each end for the trimmed-mean nudge.
        decay_max: upper clamp for the autocorrelation decay.
        active_days: an entity is inactive if its last date is this many days or more
            older than the global max date.
        interval_z: z multiplier for the forecast band (forecast +- z * std_dev).
    """

    iqr_k: float = 1.5
    min_positive_for_iqr: int = 4
    rescue_window: int = 24
    rescue_lookback: int = 12
    rescue_min_points: int = 6
    rescue_tolerance: float = 0.11
    baseline_points: int = 3
    baseline_cap_ratio: float = 0.8
    min_valid_months: int = 12
    tight_k_max_valid: int = 35
    tight_k_ratio: float = 0.5
    event_months: Tuple[str, ...] = ("2020-03", "2020-04", "2020-05")
    event_min_side: int = 5
    shift_window: int = 6
    shift_margin: int = 6
    shift_min_points: int = 3
    shift_threshold: float = 0.15
    shift_min_length: int = 24
    secondary_threshold: float = 0.12
    secondary_exclusion: int = 12
    secondary_min_length: int = 36
    break_min_side: int = 5
    min_k: float = 1e-4
    max_k: float = 5.0
    l_cap_multiplier: float = 10.0
    penalty: float = 1e15
    initial_k: float = 0.1
    startup_t0: float = 12.0
    default_global_k: float = 0.1
    simplex_step: float = 0.05
    simplex_zero_step: float = 0.001
    max_iterations: int = 2500
    f_tolerance: float = 1e-5
    aic_sse_floor: float = 1e-12
    nudge_history_short: int = 6
    nudge_history_long: int = 12
    nudge_recent_points: int = 3
    nudge_lookback: int = 12
    nudge_trim: float = 0.2
    decay_max: float = 0.9
    active_days: int = 60
    interval_z: float = 1.96


@dataclass
class BatchParams:
    """
    Options for a multi-entity run.

    Attributes:
        max_workers: >1 fits each pass in a process pool; 1 runs sequentially.
        horizon: months projected past each entity's last observation.
        holdout: months held out for the backtest (0 disables it).
        metadata_columns: long-frame columns passed through as entity metadata.
    """

    max_workers: int = 1
    horizon: int = 12
    holdout: int = 0
    metadata_columns: Tuple[str, ...] = field(
        default_factory=lambda: ("block", "region", "prefecture")
    )
    output_dir: Optional[str] = None


def get_default_params() -> tuple[EngineParams, BatchParams]:
    """
    Single point of authority for default parameter values (CLI help,
    --print-defaults and programmatic callers all read from here).
    """
    return EngineParams(), BatchParams()
