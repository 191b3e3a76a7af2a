"""
Data Model for Site Ingestion

Site specifications supplied by callers and the harmonized results returned
to them. SiteSpec is immutable and validated at construction; results are
created once by the pipeline and owned by the caller afterwards.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional

import numpy as np
import pandas as pd
import xarray as xr

from .logging_utils import ConfigurationError, describe_error
from .resolution import DateLike, Resolution, to_day


@dataclass(frozen=True)
class SiteSpec:
    """
    One site of an ingestion request.

    Attributes:
        site_id: Site identifier (e.g. FLUXNET code 'US-Ha1')
        latitude: Decimal degrees [-90, 90], None if unknown
        longitude: Decimal degrees [-180, 180], None if unknown
        date_start: Inclusive first date
        date_end: Inclusive last date
        variables: Optional per-site variable request replacing the shared one
        settings: Optional per-site settings overrides

    Coordinates may only be left unknown (both None) for sources whose
    records are looked up by site id.
    """
    site_id: str
    latitude: Optional[float]
    longitude: Optional[float]
    date_start: DateLike
    date_end: DateLike
    variables: Optional[Mapping[str, Optional[str]]] = None
    settings: Optional[Mapping[str, Any]] = None

    def __post_init__(self):
        context = {'site_id': self.site_id}
        if not isinstance(self.site_id, str) or not self.site_id:
            raise ConfigurationError(f"Site identifier must be a non-empty string, got {self.site_id!r}")
        if (self.latitude is None) != (self.longitude is None):
            raise ConfigurationError(
                f"Latitude and longitude must both be given or both omitted for site {self.site_id}", context)
        if self.has_coordinates:
            self._check_coordinates(context)
        self._check_dates(context)

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None

    def _check_coordinates(self, context):
        try:
            latitude, longitude = float(self.latitude), float(self.longitude)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed coordinates for site {self.site_id}: {e}", context) from e
        if not -90.0 <= latitude <= 90.0:
            raise ConfigurationError(f"Latitude {self.latitude} outside [-90, 90] for site {self.site_id}",
                                     context)
        if not -180.0 <= longitude <= 180.0:
            raise ConfigurationError(
                f"Longitude {self.longitude} outside [-180, 180] for site {self.site_id}", context)
        object.__setattr__(self, 'latitude', latitude)
        object.__setattr__(self, 'longitude', longitude)

    def _check_dates(self, context):
        try:
            start, end = to_day(self.date_start), to_day(self.date_end)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed dates for site {self.site_id}: {e}", context) from e
        if start > end:
            raise ConfigurationError(
                f"Start date {self.date_start} is after end date {self.date_end} for site {self.site_id}",
                context
            )

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> 'SiteSpec':
        """Build a SiteSpec from a mapping (e.g. a row of a site table)."""
        try:
            return cls(**dict(values))
        except TypeError as e:
            raise ConfigurationError(f"Malformed site specification {dict(values)}: {e}") from e


@dataclass
class HarmonizedSeries:
    """
    A standardized variable at one target resolution.

    Attributes:
        name: Standardized variable name
        units: Canonical units
        resolution: Target resolution
        times: Period starts, strictly increasing, datetime64[m]
        values: One value per period, NaN where missing
        attrs: Provenance (source, native resolution, method, site)
    """
    name: str
    units: str
    resolution: Resolution
    times: np.ndarray
    values: np.ndarray
    attrs: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.times)

    @property
    def n_missing(self) -> int:
        return int(np.count_nonzero(~np.isfinite(self.values)))

    def to_dataarray(self) -> xr.DataArray:
        attrs = dict(self.attrs)
        attrs.update({'units': self.units, 'resolution': self.resolution.value})
        return xr.DataArray(
            self.values,
            dims=['time'],
            coords={'time': self.times.astype('datetime64[ns]')},
            name=self.name,
            attrs=attrs,
        )

    def to_series(self) -> pd.Series:
        return pd.Series(self.values, index=pd.DatetimeIndex(self.times.astype('datetime64[ns]')),
                         name=self.name)


@dataclass
class SiteResult:
    """
    Outcome of one site pipeline.

    Attributes:
        site: The requested site
        series: Standardized name -> HarmonizedSeries for successful variables
        error: Site-level error, set when the site produced no series
        variable_errors: Standardized name -> error for failed variables
        filter_reports: Standardized name -> quality filter report
    """
    site: SiteSpec
    series: Dict[str, HarmonizedSeries] = field(default_factory=dict)
    error: Optional[Exception] = None
    variable_errors: Dict[str, Exception] = field(default_factory=dict)
    filter_reports: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dataset(self) -> xr.Dataset:
        """
        Combine the site's series into one xarray Dataset.

        Series of one site share the target grid, so they align on 'time'.
        """
        dataset = xr.Dataset({name: series.to_dataarray() for name, series in self.series.items()})
        dataset.attrs['site_id'] = self.site.site_id
        if self.site.has_coordinates:
            dataset.attrs.update({
                'latitude': float(self.site.latitude),
                'longitude': float(self.site.longitude),
            })
        return dataset


@dataclass
class EnsembleResult:
    """
    Results of an ensemble request, one per input site in input order.

    Attributes:
        results: SiteResult per input site
        source_id: Source the ensemble was read from
        target_resolution: Requested resolution
        summary: Run statistics from the processing logger
    """
    results: List[SiteResult]
    source_id: str = ''
    target_resolution: Optional[Resolution] = None
    summary: Dict[str, Any] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[SiteResult]:
        return iter(self.results)

    def __getitem__(self, index: int) -> SiteResult:
        return self.results[index]

    def failed(self) -> List[SiteResult]:
        return [result for result in self.results if not result.ok]

    def succeeded(self) -> List[SiteResult]:
        return [result for result in self.results if result.ok]

    def to_dict(self) -> Dict[str, Any]:
        """Summary of the ensemble keyed by site, for reporting."""
        sites = {}
        for result in self.results:
            entry: Dict[str, Any] = {
                'variables': sorted(result.series),
                'missing_periods': {name: series.n_missing for name, series in result.series.items()},
                'error': None if result.error is None else describe_error(result.error),
            }
            if result.variable_errors:
                entry['variable_errors'] = {
                    name: describe_error(error)
                    for name, error in result.variable_errors.items()
                }
            sites[result.site.site_id] = entry
        return {
            'source_id': self.source_id,
            'target_resolution': None if self.target_resolution is None else self.target_resolution.value,
            'n_sites': len(self.results),
            'n_failed': len(self.failed()),
            'sites': sites,
        }
