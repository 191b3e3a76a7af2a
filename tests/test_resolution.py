"""
Tests for temporal resolutions and period grids.
"""

import numpy as np
import pytest

from site_ingest.resolution import (
    Resolution,
    floor_to_period,
    parent_index,
    period_bounds,
    period_grid,
    shift_periods,
    validate_step,
)


def test_resolution_ordering():
    """Resolutions are ordered from finest to coarsest"""
    assert Resolution.SUB_DAILY < Resolution.DAILY < Resolution.MONTHLY < Resolution.ANNUAL
    assert max(Resolution.DAILY, Resolution.ANNUAL, Resolution.MONTHLY) is Resolution.ANNUAL
    assert Resolution.MONTHLY >= Resolution.MONTHLY


def test_resolution_parse_aliases():
    """Names and aliases resolve to enum members"""
    assert Resolution.parse('hh') is Resolution.SUB_DAILY
    assert Resolution.parse('Monthly') is Resolution.MONTHLY
    assert Resolution.parse(Resolution.ANNUAL) is Resolution.ANNUAL

    with pytest.raises(ValueError):
        Resolution.parse('fortnightly')


def test_validate_step():
    """Sub-daily steps must divide a day"""
    assert validate_step(30) == 30
    for bad in (0, 7, 1440, -60):
        with pytest.raises(ValueError):
            validate_step(bad)


def test_period_grid_monthly():
    """Monthly grid covers every month touched by the range"""
    grid = period_grid(Resolution.MONTHLY, '2005-01-15', '2005-03-02')

    assert len(grid) == 3
    assert grid[0] == np.datetime64('2005-01-01T00:00')
    assert grid[-1] == np.datetime64('2005-03-01T00:00')
    assert grid.dtype == np.dtype('datetime64[m]')


def test_period_grid_subdaily():
    """Sub-daily grid covers every step of the last day"""
    hourly = period_grid(Resolution.SUB_DAILY, '2005-06-01', '2005-06-01', 60)
    half_hourly = period_grid(Resolution.SUB_DAILY, '2005-06-01', '2005-06-02', 30)

    assert len(hourly) == 24
    assert hourly[-1] == np.datetime64('2005-06-01T23:00')
    assert len(half_hourly) == 96


def test_period_grid_empty_range():
    assert period_grid(Resolution.DAILY, '2005-02-01', '2005-01-01').size == 0


def test_floor_to_period():
    """Timestamps floor to the start of their period"""
    times = np.array(['2005-02-17T13:45'], dtype='datetime64[m]')

    assert floor_to_period(times, Resolution.MONTHLY)[0] == np.datetime64('2005-02-01T00:00')
    assert floor_to_period(times, Resolution.ANNUAL)[0] == np.datetime64('2005-01-01T00:00')
    assert floor_to_period(times, Resolution.DAILY)[0] == np.datetime64('2005-02-17T00:00')
    assert floor_to_period(times, Resolution.SUB_DAILY, 30)[0] == np.datetime64('2005-02-17T13:30')


def test_period_bounds():
    """Bounds expand a range to whole periods"""
    first, last = period_bounds(Resolution.MONTHLY, '2005-02-10', '2005-02-11')
    assert first == np.datetime64('2005-02-01')
    assert last == np.datetime64('2005-02-28')

    first, last = period_bounds(Resolution.ANNUAL, '2004-03-01', '2005-02-11')
    assert first == np.datetime64('2004-01-01')
    assert last == np.datetime64('2005-12-31')


def test_shift_periods():
    assert shift_periods(np.datetime64('2005-01-01'), Resolution.MONTHLY, -1) == np.datetime64('2004-12-01')
    assert shift_periods(np.datetime64('2005-01-01'), Resolution.ANNUAL, 1) == np.datetime64('2006-01-01')
    assert shift_periods(np.datetime64('2005-01-01'), Resolution.DAILY, -1) == np.datetime64('2004-12-31')


def test_parent_index_nested_grids():
    """Each day maps to its month"""
    days = period_grid(Resolution.DAILY, '2005-01-01', '2005-02-28')
    months = period_grid(Resolution.MONTHLY, '2005-01-01', '2005-02-28')

    parents = parent_index(days, months)

    assert np.all(parents[:31] == 0)
    assert np.all(parents[31:] == 1)
    assert len(parents) == 59
