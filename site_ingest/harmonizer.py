"""
Temporal Harmonizer for Site Ingestion

Converts a raw series at a source's native resolution into a
HarmonizedSeries at the requested target resolution.

Scientific Context:
The method depends on the direction of the conversion and on the variable
kind (see variables.VariableKind):

- Upsampling (native coarser than target) proceeds one resolution at a time
  (annual -> monthly -> daily -> sub-daily):
    * STATE: mean-preserving quadratic interpolation
    * FLUX_TOTAL: the same scheme applied to per-period shares, preserving sums
    * PRECIPITATION: stochastic weather generator with exact mass
      preservation; wet-day counts are used for the step that produces daily
      values, other steps use the deterministic fallback pattern
    * STATIC: broadcast of the single value
- Downsampling (native finer than target) reduces every target period with
  the kind's reducer (mean, sum or first). A target period whose fraction of
  missing native periods exceeds max_missing_fraction is missing.
- Equal resolutions pass through with gaps preserved.

Means over periods of unequal length (months within a year) are weighted by
period duration in both directions, so annual -> monthly -> daily keeps the
day-weighted annual mean.

A missing coarse value never yields numbers at finer resolution. Raw samples
are first placed on the complete native period grid of the read window, so
absent native periods become explicit gaps. The output holds exactly one
value per target period overlapping [date_start, date_end].
"""

import logging
from typing import Optional, Sequence, Tuple

import numpy as np

from .interpolation import aggregate, mean_preserving_interpolation
from .logging_utils import ConfigurationError
from .models import HarmonizedSeries
from .resolution import (
    COARSE_TO_FINE,
    DEFAULT_SUBDAILY_STEP_MINUTES,
    DateLike,
    Resolution,
    describe_grid,
    floor_to_period,
    next_period_start,
    parent_index,
    period_bounds,
    period_grid,
    shift_periods,
)
from .settings import SourceSettings
from .variables import VariableKind, VariableSpec
from .weather_generator import PrecipitationGenerator

# Grid level: a resolution plus the step of sub-daily grids
Level = Tuple[Resolution, int]


def regularize(times: Sequence, values: Sequence[float], grid: np.ndarray,
               resolution: Resolution, step_minutes: int = DEFAULT_SUBDAILY_STEP_MINUTES) -> np.ndarray:
    """
    Place raw samples on a complete period grid.

    Sample timestamps are floored to their period start; several samples in
    one period are averaged; periods without a finite sample are NaN;
    samples outside the grid are ignored.

    Args:
        times: Sample timestamps
        values: Sample values, NaN for missing
        grid: Period starts, datetime64[m]
        resolution: Grid resolution
        step_minutes: Step of sub-daily grids

    Returns:
        np.ndarray: One value per grid period
    """
    result = np.full(grid.size, np.nan)
    if grid.size == 0 or len(times) == 0:
        return result

    starts = floor_to_period(np.asarray(times), resolution, step_minutes)
    values = np.asarray(values, dtype=float)
    index = np.searchsorted(grid, starts)
    inside = index < grid.size
    inside[inside] = grid[index[inside]] == starts[inside]
    keep = inside & np.isfinite(values)

    sums = np.bincount(index[keep], weights=values[keep], minlength=grid.size)
    counts = np.bincount(index[keep], minlength=grid.size)
    np.divide(sums, counts, out=result, where=counts > 0)
    return result


def period_durations(grid: np.ndarray, resolution: Resolution,
                     step_minutes: int = DEFAULT_SUBDAILY_STEP_MINUTES) -> np.ndarray:
    """Length of every period of a grid in minutes."""
    if grid.size == 0:
        return np.array([], dtype=float)
    end = next_period_start(grid[-1], resolution, step_minutes)
    return np.diff(np.append(grid, end)).astype('timedelta64[m]').astype(float)


class Harmonizer:
    """
    Resolution conversion of one site's series.

    A Harmonizer holds only its settings and a generator, so each site
    pipeline builds its own from the site's effective settings.
    """

    def __init__(self, settings: Optional[SourceSettings] = None):
        """
        Initialize the harmonizer.

        Args:
            settings: Settings record providing max_missing_fraction, the
                target sub-daily step and the weather generator parameters
        """
        self.settings = settings or SourceSettings()
        self.generator = PrecipitationGenerator.from_settings(self.settings)
        self.logger = logging.getLogger(self.__class__.__name__)

    @property
    def target_step(self) -> int:
        return self.settings.subdaily_step_minutes

    @staticmethod
    def _compare(native: Level, target: Level) -> int:
        """-1 if native is finer than target, 1 if coarser, 0 if equal."""
        if native[0] != target[0]:
            return 1 if native[0] > target[0] else -1
        if native[0] is not Resolution.SUB_DAILY or native[1] == target[1]:
            return 0
        coarse, fine = max(native[1], target[1]), min(native[1], target[1])
        if coarse % fine:
            raise ConfigurationError(
                f"Sub-daily steps {native[1]} and {target[1]} minutes are not nested"
            )
        return 1 if native[1] > target[1] else -1

    def read_window(self, native_resolution: Resolution, target_resolution: Resolution,
                    date_start: DateLike, date_end: DateLike,
                    native_step_minutes: Optional[int] = None) -> Tuple[np.datetime64, np.datetime64]:
        """
        Date window a reader must cover to harmonize [date_start, date_end].

        The window spans whole periods of the coarser of the two resolutions.
        When upsampling it is widened by one native period on each side so
        the interpolation of the first and last periods sees their neighbours.

        Returns:
            tuple: (first day, last day) as datetime64[D], inclusive
        """
        native = (native_resolution, native_step_minutes or DEFAULT_SUBDAILY_STEP_MINUTES)
        target = (target_resolution, self.target_step)
        direction = self._compare(native, target)
        outer = native if direction >= 0 else target

        first, last = period_bounds(outer[0], date_start, date_end, outer[1])
        if direction > 0:
            first = shift_periods(first, native_resolution, -1)
            last = shift_periods(last + 1, native_resolution, 1) - 1
        return first, last

    def _path(self, native: Level, target: Level):
        """Grid levels visited when upsampling from native to target."""
        if native[0] is Resolution.SUB_DAILY:
            return [target]
        levels = [(resolution, self.target_step) for resolution in COARSE_TO_FINE
                  if native[0] > resolution >= target[0]]
        return levels

    def harmonize(self, times: Sequence, values: Sequence[float], spec: VariableSpec,
                  native_resolution: Resolution, target_resolution: Resolution,
                  date_start: DateLike, date_end: DateLike, site_id: str = '',
                  wet_days: Optional[Tuple[Sequence, Sequence[float]]] = None,
                  native_step_minutes: Optional[int] = None) -> HarmonizedSeries:
        """
        Convert a native series to the target resolution.

        Args:
            times: Native sample timestamps
            values: Sample values in canonical units, NaN for missing
            spec: Harmonization metadata of the variable
            native_resolution: Resolution of the samples
            target_resolution: Requested resolution
            date_start: Inclusive first date of the request
            date_end: Inclusive last date of the request
            site_id: Site identifier (weather generator seed component)
            wet_days: Optional (times, counts) of wet days per native period,
                for precipitation
            native_step_minutes: Step of sub-daily native samples

        Returns:
            HarmonizedSeries: One value per target period in the request
        """
        native = (native_resolution, native_step_minutes or DEFAULT_SUBDAILY_STEP_MINUTES)
        target = (target_resolution, self.target_step)
        direction = self._compare(native, target)

        window_start, window_end = self.read_window(native_resolution, target_resolution,
                                                    date_start, date_end, native_step_minutes)
        native_grid = period_grid(native[0], window_start, window_end, native[1])
        native_values = regularize(times, values, native_grid, native[0], native[1])
        self.logger.debug(f"{site_id}/{spec.name}: native {describe_grid(native_grid)}")

        if spec.kind is VariableKind.STATIC:
            grid, result, method = self._broadcast(native_values, target, window_start, window_end)
        elif direction == 0:
            grid, result, method = native_grid, native_values, 'identity'
        elif direction < 0:
            grid, result = self._downsample(native_grid, native_values, native, target,
                                            window_start, window_end, spec.kind.reducer)
            method = f"aggregate_{spec.kind.reducer}"
        else:
            wet = None
            if wet_days is not None:
                wet = regularize(wet_days[0], wet_days[1], native_grid, native[0], native[1])
            grid, result, method = self._upsample(native_grid, native_values, native, target,
                                                  window_start, window_end, spec, site_id, wet)

        output_grid = period_grid(target[0], date_start, date_end, target[1])
        output = result[np.searchsorted(grid, output_grid)]

        return HarmonizedSeries(
            name=spec.name,
            units=spec.units,
            resolution=target_resolution,
            times=output_grid,
            values=output,
            attrs={
                'site_id': site_id,
                'native_resolution': native_resolution.value,
                'method': method,
                'step_minutes': target[1] if target_resolution is Resolution.SUB_DAILY else None,
            },
        )

    def _broadcast(self, native_values: np.ndarray, target: Level, window_start, window_end):
        grid = period_grid(target[0], window_start, window_end, target[1])
        finite = native_values[np.isfinite(native_values)]
        value = finite[0] if finite.size else np.nan
        return grid, np.full(grid.size, value), 'broadcast'

    def _downsample(self, native_grid: np.ndarray, native_values: np.ndarray, native: Level,
                    target: Level, window_start, window_end, reducer: str):
        grid = period_grid(target[0], window_start, window_end, target[1])
        parents = parent_index(native_grid, grid)
        expected = np.bincount(parents[parents >= 0], minlength=grid.size)
        result = aggregate(native_values, parents, expected, reducer,
                           self.settings.max_missing_fraction,
                           period_durations(native_grid, native[0], native[1]))
        return grid, result

    def _upsample(self, native_grid: np.ndarray, native_values: np.ndarray, native: Level,
                  target: Level, window_start, window_end, spec: VariableSpec, site_id: str,
                  wet: Optional[np.ndarray]):
        coarse_grid, coarse_values, coarse_level = native_grid, native_values, native
        method = None

        for level in self._path(native, target):
            fine_grid = period_grid(level[0], window_start, window_end, level[1])
            counts = np.bincount(parent_index(fine_grid, coarse_grid), minlength=coarse_grid.size)

            if spec.kind is VariableKind.PRECIPITATION:
                wet_counts = wet if (wet is not None and level[0] is Resolution.DAILY) else None
                keys = [f"{start}>{level[0].value}" for start in coarse_grid]
                fine_values = self.generator.disaggregate_series(coarse_values, counts, wet_counts,
                                                                 site_id, keys)
                method = 'weather_generator'
            else:
                mode = 'sum' if spec.kind is VariableKind.FLUX_TOTAL else 'mean'
                fine_values = mean_preserving_interpolation(
                    coarse_values, counts, mode, spec.lower_bound,
                    period_durations(fine_grid, level[0], level[1]))
                method = f"mean_preserving_{mode}"

            self.logger.debug(f"{site_id}/{spec.name}: {coarse_level[0].value} -> {level[0].value}, "
                              f"{coarse_grid.size} -> {fine_grid.size} periods")
            coarse_grid, coarse_values, coarse_level = fine_grid, fine_values, level
            wet = None

        return coarse_grid, coarse_values, method
