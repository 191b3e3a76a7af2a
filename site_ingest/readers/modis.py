"""
MODIS Land Product Subset Reader for Site Ingestion

Reads single-pixel time series of MODIS vegetation products (FPAR, LAI,
NDVI, EVI) from the ORNL DAAC MODIS web service.

Workflow:
1. List composite dates available for the pixel (``/{product}/dates``)
2. Request subsets in chunks of at most 10 dates (service limit)
3. Scale raw integers and mask fill values
4. Spread each composite over the days it covers

A composite is reported on its first day and represents every day up to the
next composite, at most the product's compositing period (4 days for
MCD15A3H, 8 for MOD15A2H, 16 for MOD13Q1). Composites restart on 1 January,
so the last one of a year is shorter.

References:
- ORNL DAAC MODIS web service: https://modis.ornl.gov/data/modis_webservice.html
"""

import logging
from typing import Any, Dict, List, Optional

import numpy as np

from ..logging_utils import FormatError, NotFoundError, RangeError
from ..resolution import DateLike, Resolution, to_day
from .base import RawSample, RemoteSourceReader

logger = logging.getLogger(__name__)

# Band -> default product, scale factor and valid raw range
MODIS_BANDS: Dict[str, Dict[str, Any]] = {
    'Fpar_500m': {'product': 'MCD15A3H', 'scale': 0.01, 'valid_range': (0, 100)},
    'Lai_500m': {'product': 'MCD15A3H', 'scale': 0.1, 'valid_range': (0, 100)},
    '250m_16_days_NDVI': {'product': 'MOD13Q1', 'scale': 0.0001, 'valid_range': (-2000, 10000)},
    '250m_16_days_EVI': {'product': 'MOD13Q1', 'scale': 0.0001, 'valid_range': (-2000, 10000)},
}

# Product -> compositing period in days
COMPOSITE_DAYS: Dict[str, int] = {
    'MCD15A3H': 4,
    'MCD15A2H': 8,
    'MOD15A2H': 8,
    'MYD15A2H': 8,
    'MOD13Q1': 16,
    'MYD13Q1': 16,
}
DEFAULT_COMPOSITE_DAYS = 8

DATES_PER_REQUEST = 10


def composite_days(product: str) -> int:
    return COMPOSITE_DAYS.get(product, DEFAULT_COMPOSITE_DAYS)


def expand_composites(starts: np.ndarray, values: np.ndarray, period_days: int,
                      date_start: DateLike, date_end: DateLike) -> List[RawSample]:
    """
    One daily sample per day covered by a composite, within [date_start, date_end].

    Args:
        starts: Composite first days, increasing, datetime64[D]
        values: Composite values, NaN where masked
        period_days: Compositing period of the product
        date_start: Inclusive first day to emit
        date_end: Inclusive last day to emit

    Returns:
        list: Daily RawSamples
    """
    first, last = to_day(date_start), to_day(date_end)
    samples = []
    for i, (start, value) in enumerate(zip(starts, values)):
        stop = start + np.timedelta64(period_days, 'D')
        stop = min(stop, (start.astype('datetime64[Y]') + 1).astype('datetime64[D]'))
        if i + 1 < len(starts):
            stop = min(stop, starts[i + 1])
        for day in np.arange(max(start, first), min(stop, last + np.timedelta64(1, 'D')),
                             dtype='datetime64[D]'):
            samples.append(RawSample(timestamp=day.astype('datetime64[m]'), value=float(value),
                                     resolution=Resolution.DAILY))
    return samples


class ModisSubsetReader(RemoteSourceReader):
    """
    Read MODIS pixel time series from the ORNL DAAC subset service.

    Attributes:
        native_resolution: Daily (composites spread over the days they cover)
    """

    native_resolution = Resolution.DAILY

    def _list_dates(self, settings, product: str, longitude: float, latitude: float,
                    date_start: DateLike, date_end: DateLike) -> List[Dict[str, str]]:
        response = self._get(
            f"{settings.url}/{product}/dates", settings,
            params={'latitude': latitude, 'longitude': longitude}
        )
        try:
            dates = response.json()['dates']
        except (ValueError, KeyError) as e:
            raise FormatError(f"Unexpected dates payload for {product}") from e

        # A composite starting before the window may still cover its first days
        first = to_day(date_start) - np.timedelta64(composite_days(product) - 1, 'D')
        last = to_day(date_end)
        return [d for d in dates if first <= np.datetime64(d['calendar_date'], 'D') <= last]

    def read(self, longitude: float, latitude: float, date_start: DateLike, date_end: DateLike,
             source_variable_id: str, settings, site_id: Optional[str] = None) -> List[RawSample]:
        self.validate_request(longitude, latitude, date_start, date_end)

        band = MODIS_BANDS.get(source_variable_id)
        if band is None:
            raise NotFoundError(
                f"Unknown MODIS band '{source_variable_id}'. Available: {sorted(MODIS_BANDS)}"
            )
        product = settings.product or band['product']

        dates = self._list_dates(settings, product, longitude, latitude, date_start, date_end)
        if not dates:
            raise RangeError(
                f"No {product} composites between {date_start} and {date_end}",
                {'product': product, 'longitude': longitude, 'latitude': latitude}
            )

        low, high = band['valid_range']
        starts, values = [], []
        for chunk_start in range(0, len(dates), DATES_PER_REQUEST):
            chunk = dates[chunk_start:chunk_start + DATES_PER_REQUEST]
            response = self._get(
                f"{settings.url}/{product}/subset", settings,
                params={
                    'latitude': latitude,
                    'longitude': longitude,
                    'band': source_variable_id,
                    'startDate': chunk[0]['modis_date'],
                    'endDate': chunk[-1]['modis_date'],
                    'kmAboveBelow': 0,
                    'kmLeftRight': 0,
                }
            )
            try:
                payload = response.json()
                scale = float(payload.get('scale') or band['scale'])
                subsets = payload['subset']
            except (ValueError, KeyError, TypeError) as e:
                raise FormatError(f"Unexpected subset payload for {product}") from e

            for subset in subsets:
                raw = float(subset['data'][0])
                starts.append(np.datetime64(subset['calendar_date'], 'D'))
                values.append(raw * scale if low <= raw <= high else np.nan)

        starts = np.array(starts, dtype='datetime64[D]')
        order = np.argsort(starts, kind='stable')
        samples = expand_composites(starts[order], np.array(values, dtype=float)[order],
                                    composite_days(product), date_start, date_end)
        if not samples:
            raise RangeError(f"No {product} composite covers {date_start} to {date_end}",
                             {'product': product, 'longitude': longitude, 'latitude': latitude})

        logger.info(f"Read {len(starts)} {product}/{source_variable_id} composites "
                    f"({len(samples)} days) at ({longitude}, {latitude})")
        return samples
