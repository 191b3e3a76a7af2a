"""
Gridded Archive Reader for Site Ingestion

Extracts point time series from locally stored gridded NetCDF archives
(WATCH-WFDEI daily forcing, CRU TS monthly climate, ETOPO1 elevation) by
nearest-cell selection.

Scientific Context:
Gridded products are cell averages, so the nearest cell is the closest
representation of a point site. Requests outside the grid extent (beyond
half a cell from the outermost centres) are rejected instead of silently
snapping to an edge cell. Time-invariant archives (no time dimension) yield
a single sample stamped with the first requested date.
"""

import glob
import logging
import os
from typing import List, Optional, Tuple

import numpy as np
import xarray as xr

from ..logging_utils import FormatError, NotFoundError, RangeError
from ..resolution import DateLike, Resolution, end_of_day, to_day
from .base import RawSample, SourceReader, samples_from_arrays

logger = logging.getLogger(__name__)

LATITUDE_NAMES = ('lat', 'latitude', 'y')
LONGITUDE_NAMES = ('lon', 'longitude', 'x')


def _find_coordinate(dataset: xr.Dataset, candidates: Tuple[str, ...]) -> str:
    for name in candidates:
        if name in dataset.coords or name in dataset.dims:
            return name
    raise FormatError(f"No coordinate among {candidates} in archive")


def _check_extent(coordinate: np.ndarray, value: float, name: str) -> None:
    """Reject values beyond half a cell from the outermost cell centres."""
    coordinate = np.asarray(coordinate, dtype=float)
    half_cell = abs(float(np.median(np.diff(coordinate)))) / 2 if coordinate.size > 1 else 0.5
    low, high = float(coordinate.min()) - half_cell, float(coordinate.max()) + half_cell
    if not low <= value <= high:
        raise RangeError(
            f"{name}={value} is outside the archive extent [{low}, {high}]",
            {name: value, 'extent': (low, high)}
        )


class GriddedArchiveReader(SourceReader):
    """
    Read point series from NetCDF archives by nearest grid cell.

    Attributes:
        native_resolution: Resolution of the archive's time axis
    """

    def __init__(self, rate_limiter=None, native_resolution: Resolution = Resolution.DAILY):
        super().__init__(rate_limiter)
        self.native_resolution = native_resolution

    def find_files(self, settings, source_variable_id: str) -> List[str]:
        """
        Locate the archive files of a variable.

        Raises:
            NotFoundError: If no file matches the configured pattern
        """
        pattern = os.path.join(settings.data_dir,
                               settings.file_pattern.format(variable=source_variable_id))
        files = sorted(glob.glob(pattern))
        if not files:
            raise NotFoundError(f"No archive files match {pattern}", {'pattern': pattern})
        return files

    def _extract_point(self, path: str, source_variable_id: str, longitude: float, latitude: float,
                       date_start: DateLike, date_end: DateLike) -> Optional[xr.DataArray]:
        try:
            dataset = xr.open_dataset(path)
        except (OSError, ValueError) as e:
            raise FormatError(f"Cannot open archive {path}: {e}", {'path': path}) from e

        with dataset:
            if source_variable_id not in dataset.data_vars:
                raise FormatError(
                    f"Variable '{source_variable_id}' not in {os.path.basename(path)}. "
                    f"Available: {sorted(dataset.data_vars)}",
                    {'path': path}
                )
            lat_name = _find_coordinate(dataset, LATITUDE_NAMES)
            lon_name = _find_coordinate(dataset, LONGITUDE_NAMES)
            _check_extent(dataset[lat_name].values, latitude, 'latitude')
            _check_extent(dataset[lon_name].values, longitude, 'longitude')

            point = dataset[source_variable_id].sel(
                {lat_name: latitude, lon_name: longitude}, method='nearest'
            )
            if 'time' in point.dims:
                point = point.sel(time=slice(np.datetime64(to_day(date_start), 'ns'),
                                             np.datetime64(end_of_day(date_end), 'ns')))
                if point.sizes['time'] == 0:
                    return None
            return point.load()

    def read(self, longitude: float, latitude: float, date_start: DateLike, date_end: DateLike,
             source_variable_id: str, settings, site_id: Optional[str] = None) -> List[RawSample]:
        self.validate_request(longitude, latitude, date_start, date_end)

        pieces = []
        for path in self.find_files(settings, source_variable_id):
            point = self._extract_point(path, source_variable_id, longitude, latitude,
                                        date_start, date_end)
            if point is not None:
                pieces.append(point)

        if not pieces:
            raise RangeError(
                f"No '{source_variable_id}' data between {date_start} and {date_end}",
                {'variable': source_variable_id}
            )

        if 'time' not in pieces[0].dims:
            logger.debug(f"Time-invariant archive for '{source_variable_id}'")
            return [RawSample(timestamp=to_day(date_start).astype('datetime64[m]'),
                              value=float(pieces[0].values),
                              resolution=self.native_resolution)]

        series = xr.concat(pieces, dim='time').sortby('time')
        logger.debug(f"Extracted {series.sizes['time']} '{source_variable_id}' values "
                     f"at ({longitude}, {latitude})")
        return samples_from_arrays(series['time'].values, series.values, self.native_resolution)
