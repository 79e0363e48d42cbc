"""
Structural-break detection over the masked series.

Three independent scans:
- fixed-date scan: a known calendar event (default: the 2020 pandemic onset)
- general max-shift scan: largest pre/post window level change anywhere
- secondary-shift scan: the general scan away from the fixed-date break, lower threshold
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import numpy as np

from .config import EngineParams
from .timeline import normalize_month

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BreakCandidate:
    index: int
    shift_guess: float
    ratio: float = 0.0


@dataclass(frozen=True)
class BreakScan:
    fixed: Optional[BreakCandidate] = None
    general: Optional[BreakCandidate] = None
    secondary: Optional[BreakCandidate] = None

    @property
    def single(self) -> Optional[BreakCandidate]:
        """Break used by the single-shift model: the general scan wins over the fixed date."""
        return self.general if self.general is not None else self.fixed

    @property
    def dual(self) -> Optional[tuple[BreakCandidate, BreakCandidate]]:
        """(fixed, secondary) when both exist and differ; the fixed date anchors break 1."""
        if self.fixed is None or self.secondary is None:
            return None
        if self.fixed.index == self.secondary.index:
            return None
        return self.fixed, self.secondary


def _masked_mean(raw: np.ndarray, mask: np.ndarray, lo: int, hi: int) -> Optional[float]:
    lo, hi = max(lo, 0), min(hi, len(raw))
    vals = raw[lo:hi][mask[lo:hi]]
    if vals.size == 0:
        return None
    return float(vals.mean())


def scan_fixed_date(
    raw: np.ndarray,
    mask: np.ndarray,
    dates: Sequence[str],
    params: EngineParams,
) -> Optional[BreakCandidate]:
    """
    First month whose date is one of params.event_months.

    Requires params.event_min_side valid months strictly before and at/after the
    month. Level change guess = mean(valid i+3..i+5) - mean(valid i-3..i-1); a window
    without valid months contributes 0 to the difference.
    """
    events = set(params.event_months)
    for i, d in enumerate(dates):
        if normalize_month(d) not in events:
            continue
        before = int(np.count_nonzero(mask[:i]))
        after = int(np.count_nonzero(mask[i:]))
        if before < params.event_min_side or after < params.event_min_side:
            logger.debug(
                "Fixed-date candidate %s rejected (valid before=%d, after=%d)", d, before, after
            )
            return None
        pre = _masked_mean(raw, mask, i - 3, i)
        post = _masked_mean(raw, mask, i + 3, i + 6)
        guess = (post - pre) if (pre is not None and post is not None) else 0.0
        return BreakCandidate(index=i, shift_guess=guess)
    return None


def scan_max_shift(
    raw: np.ndarray,
    mask: np.ndarray,
    params: EngineParams,
    threshold: Optional[float] = None,
    exclude_around: Optional[int] = None,
    exclusion: int = 0,
) -> Optional[BreakCandidate]:
    """
    Slide a pre/post window pair across interior months and keep the largest level change.

    For each i in [margin, n - margin): pre = valid months i-w..i-1, post = valid months
    i..i+w-1 (w = params.shift_window). Both sides need params.shift_min_points valid
    points. ratio = |post - pre| / max(pre, post, 1); the month with the largest ratio
    strictly above threshold wins. Months with |i - exclude_around| <= exclusion are skipped.
    """
    threshold = params.shift_threshold if threshold is None else threshold
    n = len(raw)
    w = params.shift_window
    best: Optional[BreakCandidate] = None
    for i in range(params.shift_margin, n - params.shift_margin):
        if exclude_around is not None and abs(i - exclude_around) <= exclusion:
            continue
        pre_vals = raw[i - w : i][mask[i - w : i]]
        post_vals = raw[i : i + w][mask[i : i + w]]
        if pre_vals.size < params.shift_min_points or post_vals.size < params.shift_min_points:
            continue
        pre_mean = float(pre_vals.mean())
        post_mean = float(post_vals.mean())
        ratio = abs(post_mean - pre_mean) / max(pre_mean, post_mean, 1.0)
        if ratio > threshold and (best is None or ratio > best.ratio):
            best = BreakCandidate(index=i, shift_guess=post_mean - pre_mean, ratio=ratio)
    return best


def detect_breaks(
    raw: Sequence[float],
    mask: Sequence[bool],
    dates: Sequence[str],
    params: Optional[EngineParams] = None,
) -> BreakScan:
    """Run all three scans and bundle the results."""
    params = params or EngineParams()
    raw = np.asarray(raw, dtype=float)
    mask = np.asarray(mask, dtype=bool)
    n = len(raw)

    fixed = scan_fixed_date(raw, mask, dates, params)

    general = None
    if n >= params.shift_min_length:
        general = scan_max_shift(raw, mask, params)

    secondary = None
    if fixed is not None and n >= params.secondary_min_length:
        secondary = scan_max_shift(
            raw,
            mask,
            params,
            threshold=params.secondary_threshold,
            exclude_around=fixed.index,
            exclusion=params.secondary_exclusion,
        )

    scan = BreakScan(fixed=fixed, general=general, secondary=secondary)
    logger.debug(
        "Breaks: fixed=%s general=%s secondary=%s",
        fixed.index if fixed else None,
        general.index if general else None,
        secondary.index if secondary else None,
    )
    return scan
