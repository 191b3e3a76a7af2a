"""
Site Pipeline for Site Ingestion

Composes Source Registry -> Source Reader -> Variable Mapper -> Quality
Filter -> Harmonizer for one site, one source and a set of variables.

Workflow per variable:
1. Compute the read window (whole periods, padded when upsampling)
2. Read raw samples, retrying transient remote failures
3. For precipitation, read the wet-period counts when the source has them
4. Convert native units to canonical units
5. For quality-filtered sources, apply the flux quality filter at native
   resolution. With the cross-estimate rule on, the variable and its
   companion estimate are read over the site's whole record, so the band
   does not depend on the requested dates.
6. Harmonize to the target resolution

Request validation (``prepare``) is separate from execution (``run``) so
that the ensemble collector can reject caller mistakes for every site before
any reader is called. A failure of one variable is recorded and the others
continue; a cancelled site stops at the next reader call.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

import numpy as np

from .harmonizer import Harmonizer
from .logging_utils import (
    CancelledError,
    ConfigurationError,
    IngestError,
    ReaderError,
    SourceReadError,
    UnknownVariableError,
)
from .models import SiteResult, SiteSpec
from .quality_control import QualityFilter
from .readers.base import RawSample, SourceReader
from .registry import DEFAULT_REGISTRY, SourceEntry, SourceRegistry
from .resolution import Resolution
from .retry import RetryManager
from .settings import SourceSettings
from .variables import VariableKind, VariableMapper


@dataclass(frozen=True)
class SiteRequest:
    """
    A validated request for one site.

    Attributes:
        site: Site specification
        source: Registry entry of the source
        settings: Effective settings (defaults < shared < per-site)
        variables: Standardized name -> native identifier, in request order
        target_resolution: Requested resolution
        unmapped: Variables rejected during validation (non-strict mode)
    """
    site: SiteSpec
    source: SourceEntry
    settings: SourceSettings
    variables: Dict[str, str]
    target_resolution: Resolution
    unmapped: Dict[str, UnknownVariableError] = field(default_factory=dict)


def samples_to_arrays(samples: List[RawSample]) -> Tuple[np.ndarray, np.ndarray, Optional[np.ndarray]]:
    """Split raw samples into (times, values, quality) arrays; quality is None if no sample has one."""
    times = np.array([sample.timestamp for sample in samples], dtype='datetime64[m]')
    values = np.array([sample.value for sample in samples], dtype=float)
    if all(sample.quality is None for sample in samples):
        return times, values, None
    quality = np.array([np.nan if sample.quality is None else sample.quality for sample in samples],
                       dtype=float)
    return times, values, quality


def align_to(times: np.ndarray, other_times: np.ndarray, other_values: np.ndarray) -> np.ndarray:
    """Values of another series at the given timestamps, NaN where it has none."""
    lookup = dict(zip(other_times.tolist(), other_values.tolist()))
    return np.array([lookup.get(t, np.nan) for t in times.tolist()], dtype=float)


class SitePipeline:
    """
    Ingest one site from one source.

    The pipeline holds only read-only collaborators (registry, mapper), so a
    single instance can run many sites concurrently.
    """

    def __init__(self, registry: Optional[SourceRegistry] = None,
                 mapper: Optional[VariableMapper] = None):
        """
        Initialize the pipeline.

        Args:
            registry: Source registry (defaults to the built-in sources)
            mapper: Variable mapper (defaults to the built-in mappings)
        """
        self.registry = registry or DEFAULT_REGISTRY
        self.mapper = mapper or VariableMapper()
        self.logger = logging.getLogger(self.__class__.__name__)

    def prepare(self, site: SiteSpec, source_id: str, variables: Optional[Mapping[str, Optional[str]]],
                settings: Optional[Mapping[str, Any]] = None,
                target_resolution: Any = Resolution.DAILY, strict: bool = True) -> SiteRequest:
        """
        Validate a site request without touching any reader.

        Args:
            site: Site specification
            source_id: Source identifier
            variables: Standardized name -> native identifier (None for the
                source default); the site's own request takes precedence
            settings: Shared settings overrides; the site's overrides apply on top
            target_resolution: Resolution or its name
            strict: Raise on unmapped variables instead of recording them

        Returns:
            SiteRequest: Validated request

        Raises:
            ConfigurationError: Unknown source, unknown variable (strict),
                malformed settings, an empty variable request or missing
                coordinates for a source read by coordinate
        """
        entry = self.registry.resolve(source_id)
        if not site.has_coordinates and not entry.site_keyed:
            raise ConfigurationError(
                f"Source '{source_id}' is read by coordinate; site {site.site_id} has none",
                {'site_id': site.site_id, 'source_id': source_id}
            )
        try:
            target = Resolution.parse(target_resolution)
        except ValueError as e:
            raise ConfigurationError(str(e), {'site_id': site.site_id}) from e

        effective = self.registry.build_settings(source_id, settings, site.settings)
        request = site.variables if site.variables is not None else variables
        if not request:
            raise ConfigurationError(f"No variables requested for site {site.site_id}",
                                     {'site_id': site.site_id})

        mapped: Dict[str, str] = {}
        unmapped: Dict[str, UnknownVariableError] = {}
        for name, native_id in request.items():
            try:
                self.mapper.spec(name)
                mapped[name] = self.mapper.resolve(name, source_id, native_id)
            except UnknownVariableError as e:
                if strict:
                    raise
                unmapped[name] = e

        return SiteRequest(site=site, source=entry, settings=effective, variables=mapped,
                           target_resolution=target, unmapped=unmapped)

    def _reader_call(self, retry: RetryManager, request: SiteRequest, native_id: str,
                     cancel_event: Optional[threading.Event], func, *args):
        """Call a reader method with retries, the cancel check and SourceReadError wrapping."""
        site = request.site

        def attempt():
            if cancel_event is not None and cancel_event.is_set():
                raise CancelledError(f"Site {site.site_id} cancelled before reading '{native_id}'",
                                     {'site_id': site.site_id})
            return func(*args, request.settings, site_id=site.site_id)

        try:
            return retry.call(attempt)
        except ReaderError as e:
            raise SourceReadError(
                f"Reading '{native_id}' from {request.source.source_id} failed for site "
                f"{site.site_id}: {e}",
                cause=e,
                context={'site_id': site.site_id, 'source_id': request.source.source_id,
                         'variable': native_id, 'reason': type(e).__name__}
            ) from e

    def _read(self, reader: SourceReader, retry: RetryManager, request: SiteRequest, native_id: str,
              window, cancel_event: Optional[threading.Event]) -> List[RawSample]:
        site = request.site
        return self._reader_call(retry, request, native_id, cancel_event, reader.read,
                                 site.longitude, site.latitude, window[0], window[1], native_id)

    def _record_window(self, reader: SourceReader, retry: RetryManager, request: SiteRequest,
                       native_id: str, window, cancel_event: Optional[threading.Event]):
        """
        The read window extended to the site's whole record.

        The cross-estimate band is estimated from the whole record and is
        independent of the requested dates. Readers that do not know their
        extent fall back to the read window.
        """
        site = request.site
        extent = self._reader_call(retry, request, native_id, cancel_event, reader.record_extent,
                                   site.longitude, site.latitude, native_id)
        if extent is None:
            self.logger.warning(f"Site {site.site_id}: record extent of '{native_id}' unknown, "
                                f"estimating the cross-estimate band over the request window")
            return window
        return min(window[0], extent[0]), max(window[1], extent[1])

    def run(self, request: SiteRequest, reader: SourceReader, retry: Optional[RetryManager] = None,
            cancel_event: Optional[threading.Event] = None) -> SiteResult:
        """
        Execute a validated request.

        Args:
            request: Output of ``prepare``
            reader: Reader instance of the request's source
            retry: Retry manager (defaults to one built from the settings)
            cancel_event: Event set by the collector on global timeout

        Returns:
            SiteResult: Series of the successful variables; per-variable
                errors; a site error when no variable succeeded

        Raises:
            CancelledError: If the cancel event is set before a reader call
        """
        site = request.site
        retry = retry or RetryManager.from_settings(request.settings)
        harmonizer = Harmonizer(request.settings)
        result = SiteResult(site=site)
        result.variable_errors.update(request.unmapped)

        for name, native_id in request.variables.items():
            try:
                self._ingest_variable(request, name, native_id, reader, retry, harmonizer,
                                      cancel_event, result)
            except CancelledError:
                raise
            except IngestError as e:
                self.logger.warning(f"Site {site.site_id}: variable '{name}' failed: {e}")
                result.variable_errors[name] = e

        if not result.series and result.variable_errors:
            result.error = next(iter(result.variable_errors.values()))
        return result

    def _ingest_variable(self, request: SiteRequest, name: str, native_id: str, reader: SourceReader,
                         retry: RetryManager, harmonizer: Harmonizer,
                         cancel_event: Optional[threading.Event], result: SiteResult) -> None:
        site, entry, source_id = request.site, request.source, request.source.source_id
        spec = self.mapper.spec(name)
        conversion = self.mapper.conversion(name, source_id)
        window = harmonizer.read_window(entry.native_resolution, request.target_resolution,
                                        site.date_start, site.date_end, entry.native_step_minutes)

        quality_filter = QualityFilter.from_settings(request.settings) if entry.quality_filtered else None
        companion_id = None
        read_window = window
        if quality_filter is not None and quality_filter.filter_cross_estimate:
            companion_id = self.mapper.companion(name, source_id, native_id)
            if companion_id is not None:
                read_window = self._record_window(reader, retry, request, native_id, window, cancel_event)

        samples = self._read(reader, retry, request, native_id, read_window, cancel_event)
        times, values, quality = samples_to_arrays(samples)
        values = conversion.apply(values)

        wet_days = None
        wet_id = self.mapper.wet_days_id(name, source_id) if spec.kind is VariableKind.PRECIPITATION else None
        if wet_id is not None and entry.native_resolution > request.target_resolution:
            try:
                wet_times, wet_values, _ = samples_to_arrays(
                    self._read(reader, retry, request, wet_id, window, cancel_event))
                wet_days = (wet_times, wet_values)
            except SourceReadError as e:
                self.logger.warning(f"Site {site.site_id}: no wet-day counts ({e.reason}), "
                                    f"using the default wet-day pattern")

        if quality_filter is not None and quality_filter.enabled:
            values = self._filter(request, name, quality_filter, companion_id, reader, retry, times,
                                  values, quality, conversion, read_window, cancel_event, result)

        series = harmonizer.harmonize(
            times, values, spec, entry.native_resolution, request.target_resolution,
            site.date_start, site.date_end, site_id=site.site_id, wet_days=wet_days,
            native_step_minutes=entry.native_step_minutes,
        )
        series.attrs['source_id'] = source_id
        series.attrs['source_variable'] = native_id
        derived_from = self.mapper.inverse(native_id, source_id)
        if derived_from != name:
            series.attrs['derived_from'] = derived_from
        result.series[name] = series

    def _filter(self, request: SiteRequest, name: str, quality_filter: QualityFilter,
                companion_id: Optional[str], reader: SourceReader, retry: RetryManager, times, values,
                quality, conversion, window, cancel_event: Optional[threading.Event],
                result: SiteResult) -> np.ndarray:
        """
        Apply the quality filter to the samples read for a variable.

        With the cross-estimate rule on, the samples span the site's whole
        record, so the band and every rule's outcome for a day are the same
        whatever dates were requested.
        """
        companion = None
        if companion_id is not None:
            try:
                companion_times, companion_values, _ = samples_to_arrays(
                    self._read(reader, retry, request, companion_id, window, cancel_event))
                companion = align_to(times, companion_times, conversion.apply(companion_values))
            except SourceReadError as e:
                self.logger.warning(f"Site {request.site.site_id}: companion '{companion_id}' "
                                    f"unavailable ({e.reason})")

        filtered, report = quality_filter.apply(values, quality, companion, variable=name)
        result.filter_reports[name] = report
        return filtered
