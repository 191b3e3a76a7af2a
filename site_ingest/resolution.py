"""
Temporal Resolution and Period Grid Utilities

Provides the ordered temporal resolutions used throughout site ingestion and
the helpers that build regular period grids, floor timestamps to period
starts and map fine periods onto the coarse periods that contain them.

Conventions:
- Every period is identified by its start timestamp, stored as
  numpy datetime64 with minute precision ('datetime64[m]').
- Dates supplied by callers are inclusive: a range [date_start, date_end]
  covers every minute of date_end.
- Sub-daily grids carry a step in minutes that must divide a day evenly.
"""

from datetime import date, datetime
from enum import Enum
from typing import Tuple, Union

import numpy as np

DateLike = Union[str, date, datetime, np.datetime64]

MINUTES_PER_DAY = 24 * 60
DEFAULT_SUBDAILY_STEP_MINUTES = 60


class Resolution(Enum):
    """Temporal resolutions, ordered from finest to coarsest"""

    SUB_DAILY = 'sub_daily'
    DAILY = 'daily'
    MONTHLY = 'monthly'
    ANNUAL = 'annual'

    @property
    def rank(self) -> int:
        return _RANKS[self]

    def __lt__(self, other):
        if not isinstance(other, Resolution):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, Resolution):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, Resolution):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, Resolution):
            return NotImplemented
        return self.rank >= other.rank

    @classmethod
    def parse(cls, value: Union[str, 'Resolution']) -> 'Resolution':
        """
        Accept a Resolution or one of its names/aliases.

        Args:
            value: Resolution instance, value ('daily') or alias ('d', 'hh', 'month')

        Returns:
            Resolution: Parsed resolution

        Raises:
            ValueError: If the value is not recognized
        """
        if isinstance(value, Resolution):
            return value
        key = str(value).strip().lower()
        if key in _ALIASES:
            return _ALIASES[key]
        raise ValueError(f"Unknown temporal resolution: {value!r}")


_RANKS = {
    Resolution.SUB_DAILY: 0,
    Resolution.DAILY: 1,
    Resolution.MONTHLY: 2,
    Resolution.ANNUAL: 3,
}

_ALIASES = {
    'sub_daily': Resolution.SUB_DAILY, 'subdaily': Resolution.SUB_DAILY,
    'hh': Resolution.SUB_DAILY, 'hourly': Resolution.SUB_DAILY, 'h': Resolution.SUB_DAILY,
    'daily': Resolution.DAILY, 'd': Resolution.DAILY, 'day': Resolution.DAILY,
    'monthly': Resolution.MONTHLY, 'm': Resolution.MONTHLY, 'month': Resolution.MONTHLY,
    'annual': Resolution.ANNUAL, 'y': Resolution.ANNUAL, 'yearly': Resolution.ANNUAL,
    'year': Resolution.ANNUAL,
}

# Resolutions in upsampling order, coarsest first
COARSE_TO_FINE = (Resolution.ANNUAL, Resolution.MONTHLY, Resolution.DAILY, Resolution.SUB_DAILY)


def to_minutes(value: DateLike) -> np.datetime64:
    """Convert a date-like value to a minute-precision datetime64 scalar."""
    if isinstance(value, np.datetime64):
        return value.astype('datetime64[m]')
    return np.datetime64(value, 'm')


def to_day(value: DateLike) -> np.datetime64:
    """Convert a date-like value to a day-precision datetime64 scalar."""
    return to_minutes(value).astype('datetime64[D]')


def validate_step(step_minutes: int) -> int:
    """
    Check that a sub-daily step divides a day evenly.

    Raises:
        ValueError: If the step is not a positive divisor of 1440 minutes
    """
    step = int(step_minutes)
    if step <= 0 or MINUTES_PER_DAY % step != 0 or step == MINUTES_PER_DAY:
        raise ValueError(f"Sub-daily step must divide a day evenly, got {step_minutes} minutes")
    return step


def floor_to_period(times: np.ndarray, resolution: Resolution,
                    step_minutes: int = DEFAULT_SUBDAILY_STEP_MINUTES) -> np.ndarray:
    """
    Floor timestamps to the start of the period that contains them.

    Args:
        times: Array of datetime64 values (any precision)
        resolution: Period resolution
        step_minutes: Step for sub-daily periods

    Returns:
        np.ndarray: Period starts as datetime64[m]
    """
    minutes = np.asarray(times).astype('datetime64[m]')

    if resolution is Resolution.SUB_DAILY:
        step = np.timedelta64(validate_step(step_minutes), 'm')
        days = minutes.astype('datetime64[D]').astype('datetime64[m]')
        return days + ((minutes - days) // step) * step
    if resolution is Resolution.DAILY:
        return minutes.astype('datetime64[D]').astype('datetime64[m]')
    if resolution is Resolution.MONTHLY:
        return minutes.astype('datetime64[M]').astype('datetime64[m]')
    return minutes.astype('datetime64[Y]').astype('datetime64[m]')


def next_period_start(period_start: np.datetime64, resolution: Resolution,
                      step_minutes: int = DEFAULT_SUBDAILY_STEP_MINUTES) -> np.datetime64:
    """Start of the period following the one starting at period_start."""
    if resolution is Resolution.SUB_DAILY:
        return period_start + np.timedelta64(validate_step(step_minutes), 'm')
    if resolution is Resolution.DAILY:
        return (period_start.astype('datetime64[D]') + 1).astype('datetime64[m]')
    if resolution is Resolution.MONTHLY:
        return (period_start.astype('datetime64[M]') + 1).astype('datetime64[m]')
    return (period_start.astype('datetime64[Y]') + 1).astype('datetime64[m]')


def period_grid(resolution: Resolution, first: DateLike, last: DateLike,
                step_minutes: int = DEFAULT_SUBDAILY_STEP_MINUTES) -> np.ndarray:
    """
    Build the regular grid of period starts covering [first, last].

    The first period is the one containing ``first``; the last is the one
    containing the final minute of ``last`` when ``last`` is a date.

    Args:
        resolution: Grid resolution
        first: Inclusive start (date or timestamp)
        last: Inclusive end date
        step_minutes: Step for sub-daily grids

    Returns:
        np.ndarray: Strictly increasing period starts, datetime64[m]
    """
    start = to_minutes(first)
    end = end_of_day(last)
    if end < start:
        return np.array([], dtype='datetime64[m]')

    if resolution is Resolution.SUB_DAILY:
        step = validate_step(step_minutes)
        grid_start = floor_to_period(np.array([start]), resolution, step)[0]
        return np.arange(grid_start, end + np.timedelta64(1, 'm'), np.timedelta64(step, 'm'))
    if resolution is Resolution.DAILY:
        return np.arange(start.astype('datetime64[D]'),
                         end.astype('datetime64[D]') + 1).astype('datetime64[m]')
    if resolution is Resolution.MONTHLY:
        return np.arange(start.astype('datetime64[M]'),
                         end.astype('datetime64[M]') + 1).astype('datetime64[m]')
    return np.arange(start.astype('datetime64[Y]'),
                     end.astype('datetime64[Y]') + 1).astype('datetime64[m]')


def end_of_day(value: DateLike) -> np.datetime64:
    """Last minute of the day containing value."""
    day = to_day(value)
    return (day + 1).astype('datetime64[m]') - np.timedelta64(1, 'm')


def period_bounds(resolution: Resolution, first: DateLike, last: DateLike,
                  step_minutes: int = DEFAULT_SUBDAILY_STEP_MINUTES) -> Tuple[np.datetime64, np.datetime64]:
    """
    Expand [first, last] to whole periods of the given resolution.

    Returns:
        tuple: (first day of the first period, last day of the last period)
            as datetime64[D]
    """
    grid = period_grid(resolution, first, last, step_minutes)
    if grid.size == 0:
        raise ValueError(f"Empty period range: {first} to {last}")
    start_day = grid[0].astype('datetime64[D]')
    stop = next_period_start(grid[-1], resolution, step_minutes)
    end_day = (stop - np.timedelta64(1, 'm')).astype('datetime64[D]')
    return start_day, end_day


def shift_periods(day: np.datetime64, resolution: Resolution, count: int) -> np.datetime64:
    """
    Move a date by a whole number of periods.

    Used to pad read windows by neighbouring coarse periods.

    Returns:
        np.datetime64: Shifted date, datetime64[D]
    """
    day = to_day(day)
    if resolution is Resolution.ANNUAL:
        return (day.astype('datetime64[Y]') + count).astype('datetime64[D]')
    if resolution is Resolution.MONTHLY:
        return (day.astype('datetime64[M]') + count).astype('datetime64[D]')
    # sub-daily neighbours live within a day of the window edge
    return day + count


def parent_index(fine_starts: np.ndarray, coarse_starts: np.ndarray) -> np.ndarray:
    """
    Index of the coarse period containing each fine period.

    Fine periods before the first coarse period get -1; callers are expected
    to pass nested grids (fine periods fully inside the coarse span).

    Args:
        fine_starts: Fine period starts, datetime64[m]
        coarse_starts: Coarse period starts, strictly increasing, datetime64[m]

    Returns:
        np.ndarray: Integer index into coarse_starts for every fine period
    """
    return np.searchsorted(coarse_starts, fine_starts, side='right') - 1


def describe_grid(times: np.ndarray) -> str:
    """Short human-readable description of a period grid, for logging."""
    if len(times) == 0:
        return "empty grid"
    return f"{len(times)} periods from {times[0]} to {times[-1]}"
