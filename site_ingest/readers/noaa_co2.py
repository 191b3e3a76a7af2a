"""
NOAA CO2 Reader for Site Ingestion

This module reads monthly atmospheric CO2 mole fractions from the NOAA
Global Monitoring Laboratory trend files and serves them as raw monthly
samples for any site.

Scientific Context:
Atmospheric CO2 is well mixed, so a single station record (Mauna Loa by
default, or the global marine surface mean) is used for every coordinate.
The coordinate is validated but does not select data.

Record format (CSV, '#' comment lines):
    year,month,decimal date,average,deseasonalized,ndays,sdev,unc
Missing monthly means are encoded as negative values (-99.99).

References:
- NOAA GML CO2 trends: https://gml.noaa.gov/ccgg/trends/
"""

import logging
from typing import Dict, List, Optional, Tuple

import numpy as np

from ..logging_utils import FormatError, NotFoundError, RangeError
from ..resolution import DateLike, Resolution, to_day
from .base import RawSample, RemoteSourceReader

logger = logging.getLogger(__name__)

# Column of each readable variable in the NOAA monthly CSV
CO2_COLUMNS = {
    'average': 3,
    'deseasonalized': 4,
}


class NoaaCo2Reader(RemoteSourceReader):
    """
    Read NOAA GML monthly CO2 records.

    Attributes:
        native_resolution: Monthly
    """

    native_resolution = Resolution.MONTHLY

    def _download_co2_record(self, settings, column: int) -> Dict[Tuple[int, int], float]:
        """
        Download and parse the CO2 record.

        Returns:
            Dict[Tuple[int, int], float]: {(year, month): co2_ppm}, NaN for missing

        Raises:
            FormatError: If no record could be parsed
        """
        logger.info(f"Downloading NOAA CO2 record from {settings.url}")
        response = self._get(settings.url, settings)

        co2_data = {}
        for line in response.text.split('\n'):
            # Skip header and empty lines
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            parts = line.split(',')
            if len(parts) <= column:
                continue

            try:
                year = int(parts[0].strip())
                month = int(parts[1].strip())
                co2_ppm = float(parts[column].strip())
            except ValueError:
                # column header line
                logger.debug(f"Skipping unparsed line: {line}")
                continue

            co2_data[(year, month)] = co2_ppm if co2_ppm > 0 else np.nan

        if not co2_data:
            raise FormatError(f"No CO2 records found at {settings.url}", {'url': settings.url})

        logger.info(f"Parsed {len(co2_data)} monthly CO2 records")
        return co2_data

    def read(self, longitude: float, latitude: float, date_start: DateLike, date_end: DateLike,
             source_variable_id: str, settings, site_id: Optional[str] = None) -> List[RawSample]:
        self.validate_request(longitude, latitude, date_start, date_end)

        if source_variable_id not in CO2_COLUMNS:
            raise NotFoundError(
                f"Unknown NOAA CO2 variable '{source_variable_id}'. Available: {sorted(CO2_COLUMNS)}"
            )

        record = self._download_co2_record(settings, CO2_COLUMNS[source_variable_id])

        months = np.arange(to_day(date_start).astype('datetime64[M]'),
                           to_day(date_end).astype('datetime64[M]') + 1)
        first_available = min(record)
        last_available = max(record)

        samples = []
        for month in months:
            year = int(str(month)[:4])
            month_number = int(str(month)[5:7])
            samples.append(RawSample(
                timestamp=month.astype('datetime64[m]'),
                value=record.get((year, month_number), np.nan),
                resolution=Resolution.MONTHLY,
            ))

        if all(sample.is_missing for sample in samples):
            raise RangeError(
                f"Requested period {date_start} to {date_end} is outside the CO2 record "
                f"({first_available[0]}-{first_available[1]:02d} to "
                f"{last_available[0]}-{last_available[1]:02d})"
            )

        return samples
