"""
FLUXNET Station File Reader for Site Ingestion

Reads daily FLUXNET2015-format station files (one CSV per site) and returns
raw daily samples with their non-gap-filled fraction as quality value.

Scientific Context:
Daily FLUXNET values are aggregated from half-hourly records, part of which
are gap-filled. The accompanying ``*_QC`` columns report the fraction of
measured (not gap-filled) half-hours for the day. Partitioned GPP estimates
(night-time and day-time methods) inherit the quality of the NEE they are
derived from, ``NEE_VUT_REF_QC``.

File conventions:
- ``TIMESTAMP`` column as YYYYMMDD
- missing values encoded as -9999
"""

import glob
import logging
import os
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from ..logging_utils import FormatError, NotFoundError, RangeError
from ..resolution import DateLike, Resolution, to_day
from .base import RawSample, SourceReader, samples_from_arrays

logger = logging.getLogger(__name__)

MISSING_VALUE = -9999

# Quality column of variables that do not carry their own *_QC column
QUALITY_COLUMNS = {
    'GPP_NT_VUT_REF': 'NEE_VUT_REF_QC',
    'GPP_DT_VUT_REF': 'NEE_VUT_REF_QC',
}


def quality_column(source_variable_id: str) -> str:
    return QUALITY_COLUMNS.get(source_variable_id, f"{source_variable_id}_QC")


class FluxnetReader(SourceReader):
    """
    Read daily FLUXNET station CSV files.

    Attributes:
        native_resolution: Daily
    """

    native_resolution = Resolution.DAILY

    def find_site_file(self, settings, site_id: Optional[str]) -> str:
        """
        Locate the station file of a site.

        Raises:
            NotFoundError: If no site id is given or no file matches
        """
        if not site_id:
            raise NotFoundError("FLUXNET files are keyed by site id; none given")
        pattern = os.path.join(settings.data_dir, settings.file_pattern.format(site_id=site_id))
        files = sorted(glob.glob(pattern))
        if not files:
            raise NotFoundError(f"No FLUXNET file for site {site_id} ({pattern})",
                                {'site_id': site_id, 'pattern': pattern})
        if len(files) > 1:
            logger.warning(f"Several FLUXNET files for {site_id}, using {os.path.basename(files[-1])}")
        return files[-1]

    def load(self, settings, site_id: Optional[str],
             source_variable_id: str) -> Tuple[pd.DataFrame, np.ndarray]:
        """
        Parse the station file of a site.

        Returns:
            tuple: (table, day of every row as datetime64[D])

        Raises:
            NotFoundError: If the site has no file
            FormatError: If the file cannot be parsed or lacks the variable
        """
        path = self.find_site_file(settings, site_id)

        try:
            table = pd.read_csv(path, na_values=[MISSING_VALUE, str(MISSING_VALUE)])
        except (OSError, ValueError) as e:
            raise FormatError(f"Cannot parse FLUXNET file {path}: {e}", {'path': path}) from e

        if 'TIMESTAMP' not in table.columns:
            raise FormatError(f"No TIMESTAMP column in {path}", {'path': path})
        if source_variable_id not in table.columns:
            raise FormatError(
                f"Variable '{source_variable_id}' not in {os.path.basename(path)}",
                {'path': path, 'variable': source_variable_id}
            )

        try:
            days = pd.to_datetime(table['TIMESTAMP'].astype(str), format='%Y%m%d').values
        except ValueError as e:
            raise FormatError(f"Malformed TIMESTAMP values in {path}", {'path': path}) from e

        return table, days.astype('datetime64[D]')

    def record_extent(self, longitude: float, latitude: float, source_variable_id: str, settings,
                      site_id: Optional[str] = None) -> Optional[Tuple[np.datetime64, np.datetime64]]:
        """First and last day with a value of the variable in the site's file."""
        table, days = self.load(settings, site_id, source_variable_id)
        present = days[table[source_variable_id].notna().values]
        if present.size == 0:
            return None
        return present.min(), present.max()

    def read(self, longitude: float, latitude: float, date_start: DateLike, date_end: DateLike,
             source_variable_id: str, settings, site_id: Optional[str] = None) -> List[RawSample]:
        self.validate_request(longitude, latitude, date_start, date_end)
        table, days = self.load(settings, site_id, source_variable_id)

        in_range = (days >= to_day(date_start)) & (days <= to_day(date_end))
        if not in_range.any():
            raise RangeError(
                f"Site {site_id} has no records between {date_start} and {date_end}",
                {'site_id': site_id, 'first': str(days.min()), 'last': str(days.max())}
            )

        qc_name = quality_column(source_variable_id)
        quality = table[qc_name].values[in_range] if qc_name in table.columns else None
        if quality is None:
            logger.debug(f"No quality column {qc_name} for {source_variable_id}")

        values = table[source_variable_id].values.astype(float)[in_range]
        logger.debug(f"Read {int(in_range.sum())} daily '{source_variable_id}' values for {site_id}")
        return samples_from_arrays(days[in_range], values, Resolution.DAILY, quality)
