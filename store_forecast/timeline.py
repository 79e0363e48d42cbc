"""
Month-date helpers.

Dates arrive as 'YYYY-MM' or 'YYYY/MM' strings (a trailing day component such
as 'YYYY-MM-DD' is tolerated). Everything is normalized to pandas monthly
Periods so month arithmetic and calendar-month lookups stay exact.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Sequence

import pandas as pd

logger = logging.getLogger(__name__)


class SeriesValidationError(ValueError):
    """Raised when a series/dates pair cannot describe a contiguous monthly series."""

    pass


def parse_month(value: str | pd.Timestamp | pd.Period) -> pd.Period:
    """Parse one date into a monthly Period; raises SeriesValidationError on failure."""
    if isinstance(value, pd.Period):
        return value.asfreq("M")
    if isinstance(value, pd.Timestamp):
        return value.to_period("M")
    text = str(value).strip().replace("/", "-").replace(".", "-")
    # Compact YYYYMM
    if len(text) == 6 and text.isdigit():
        text = f"{text[:4]}-{text[4:]}"
    try:
        return pd.Period(text, freq="M")
    except (ValueError, TypeError) as e:
        raise SeriesValidationError(f"Unparseable month date: {value!r}") from e


def parse_months(values: Iterable[str]) -> List[pd.Period]:
    return [parse_month(v) for v in values]


def normalize_month(value: str | pd.Timestamp | pd.Period) -> str:
    """Canonical 'YYYY-MM' string for a date."""
    return parse_month(value).strftime("%Y-%m")


def validate_series(series: Sequence[float], dates: Sequence[str]) -> List[pd.Period]:
    """
    Check the series/dates contract and return the parsed periods.

    Raises SeriesValidationError when:
    - series and dates differ in length
    - any date is unparseable
    - consecutive dates are not exactly one month apart (gap, duplicate or disorder)
    """
    if len(series) != len(dates):
        raise SeriesValidationError(
            f"series and dates must have equal length, got {len(series)} and {len(dates)}"
        )
    periods = parse_months(dates)
    for prev, cur in zip(periods, periods[1:]):
        if (cur - prev).n != 1:
            raise SeriesValidationError(
                f"Series is not contiguous between {prev} and {cur}"
            )
    return periods


def is_active(
    last_date: str | pd.Period, global_max_date: str | pd.Period | pd.Timestamp, active_days: int
) -> bool:
    """
    True when the last observation is less than active_days older than global_max_date.
    Both dates are taken at the first day of their month.
    """
    last_ts = parse_month(last_date).to_timestamp()
    max_ts = parse_month(global_max_date).to_timestamp()
    return (max_ts - last_ts) < pd.Timedelta(days=active_days)


def future_months(last_date: str, horizon: int) -> List[str]:
    """The horizon months following last_date as 'YYYY-MM' strings."""
    start = parse_month(last_date)
    return [(start + h).strftime("%Y-%m") for h in range(1, horizon + 1)]
