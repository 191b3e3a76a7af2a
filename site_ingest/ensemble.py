"""
Ensemble Collector and Entry Points for Site Ingestion

Fans the Site Pipeline out over an ordered collection of sites and
assembles an EnsembleResult with exactly one entry per input site, in input
order, whatever the completion order.

Execution model:
- Every site request is validated before any reader is called; caller
  mistakes (unknown source or variable, malformed settings) raise.
- max_workers <= 1 runs sites serially; otherwise a thread pool runs at most
  max_workers site pipelines at a time. Sites only block in reader calls
  (file or network I/O), so threads are sufficient.
- Site failures are captured in that site's SiteResult and never abort the
  ensemble.
- Remote sources share one rate limiter across all workers of a run.
- A global timeout stops dispatching, signals in-flight pipelines to stop at
  their next reader call and records every unfinished site as cancelled.
"""

import concurrent.futures
import logging
import threading
import time
from typing import Any, Callable, Iterable, List, Mapping, Optional, Union

from .logging_utils import CancelledError, ConfigurationError, ProcessingLogger, setup_ingest_logging
from .models import EnsembleResult, SiteResult, SiteSpec
from .pipeline import SitePipeline, SiteRequest
from .readers.base import SourceReader
from .registry import SourceRegistry
from .resolution import DateLike, Resolution
from .retry import RemoteRateLimiter, RetryManager
from .settings import IngestConfig, load_ingest_config
from .variables import VariableMapper

SiteLike = Union[SiteSpec, Mapping[str, Any]]


class EnsembleCollector:
    """
    Run site pipelines over a site collection.

    Attributes:
        max_workers: Concurrent site pipelines (1 = serial)
        timeout_seconds: Global timeout of a collection, None for no limit
    """

    def __init__(self, registry: Optional[SourceRegistry] = None, mapper: Optional[VariableMapper] = None,
                 max_workers: int = 4, timeout_seconds: Optional[float] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 processing_logger: Optional[ProcessingLogger] = None):
        """
        Initialize the collector.

        Args:
            registry: Source registry (defaults to the built-in sources)
            mapper: Variable mapper (defaults to the built-in mappings)
            max_workers: Concurrent site pipelines
            timeout_seconds: Global timeout in seconds
            sleep: Sleep function of retry backoff, replaceable in tests
            processing_logger: Run logger (defaults to the 'site_ingest' logger)
        """
        self.pipeline = SitePipeline(registry, mapper)
        self.registry = self.pipeline.registry
        self.max_workers = max_workers
        self.timeout_seconds = timeout_seconds
        self.sleep = sleep
        self.processing_logger = processing_logger or ProcessingLogger()
        self.logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_config(cls, config: IngestConfig, **kwargs) -> 'EnsembleCollector':
        """Collector configured from the process configuration, with its logging set up."""
        setup_ingest_logging(config.log_level, config.log_file)
        kwargs.setdefault('max_workers', config.max_workers)
        kwargs.setdefault('timeout_seconds', config.timeout_seconds)
        return cls(**kwargs)

    def prepare(self, sites: Iterable[SiteLike], source_id: str,
                variables: Optional[Mapping[str, Optional[str]]] = None,
                settings: Optional[Mapping[str, Any]] = None,
                target_resolution: Any = Resolution.DAILY, strict: bool = True) -> List[SiteRequest]:
        """
        Validate every site request.

        Raises:
            ConfigurationError: On the first invalid request
        """
        specs = [site if isinstance(site, SiteSpec) else SiteSpec.from_dict(site) for site in sites]
        entry = self.registry.resolve(source_id)

        requests = []
        for spec in specs:
            requests.append(self.pipeline.prepare(spec, entry.source_id, variables, settings,
                                                  target_resolution, strict))
        return requests

    def _run_site(self, request: SiteRequest, reader: SourceReader,
                  cancel_event: threading.Event) -> SiteResult:
        site = request.site
        try:
            retry = RetryManager.from_settings(request.settings, sleep=self.sleep)
            return self.pipeline.run(request, reader, retry, cancel_event)
        except CancelledError as e:
            return SiteResult(site=site, error=e)
        except Exception as e:
            self.logger.error(f"Unexpected failure of site {site.site_id}: {e}", exc_info=True)
            return SiteResult(site=site, error=e)

    @staticmethod
    def _cancelled(request: SiteRequest, reason: str) -> SiteResult:
        return SiteResult(
            site=request.site,
            error=CancelledError(f"Site {request.site.site_id} {reason} before the ensemble timeout",
                                 {'site_id': request.site.site_id})
        )

    def _collect_serial(self, requests: List[SiteRequest], reader: SourceReader,
                        cancel_event: threading.Event, deadline: Optional[float]) -> List[SiteResult]:
        results = []
        for request in requests:
            if deadline is not None and time.monotonic() >= deadline:
                cancel_event.set()
                results.append(self._cancelled(request, 'was not started'))
                continue
            results.append(self._run_site(request, reader, cancel_event))
        return results

    def _collect_parallel(self, requests: List[SiteRequest], reader: SourceReader,
                          cancel_event: threading.Event, deadline: Optional[float]) -> List[SiteResult]:
        results: List[Optional[SiteResult]] = [None] * len(requests)
        in_flight = {}
        next_index = 0
        timed_out = False

        executor = concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers,
                                                         thread_name_prefix='site_ingest')
        try:
            while next_index < len(requests) or in_flight:
                while next_index < len(requests) and len(in_flight) < self.max_workers:
                    future = executor.submit(self._run_site, requests[next_index], reader, cancel_event)
                    in_flight[future] = next_index
                    next_index += 1

                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    timed_out = True
                    break

                done, _ = concurrent.futures.wait(in_flight, timeout=remaining,
                                                  return_when=concurrent.futures.FIRST_COMPLETED)
                for future in done:
                    results[in_flight.pop(future)] = future.result()
        finally:
            if timed_out:
                cancel_event.set()
            executor.shutdown(wait=not timed_out, cancel_futures=True)

        if timed_out:
            self.logger.warning(f"Ensemble timeout after {self.timeout_seconds}s: "
                                f"{len(in_flight)} sites running, {len(requests) - next_index} not started")
            for future, index in in_flight.items():
                if future.done() and not future.cancelled():
                    results[index] = future.result()
                else:
                    results[index] = self._cancelled(requests[index], 'did not finish')
            for index in range(next_index, len(requests)):
                results[index] = self._cancelled(requests[index], 'was not started')

        return results

    def collect(self, sites: Iterable[SiteLike], source_id: str,
                variables: Optional[Mapping[str, Optional[str]]] = None,
                settings: Optional[Mapping[str, Any]] = None,
                target_resolution: Any = Resolution.DAILY, strict: bool = True,
                reader: Optional[SourceReader] = None) -> EnsembleResult:
        """
        Ingest every site of a collection.

        Args:
            sites: Ordered SiteSpecs or mappings with SiteSpec fields
            source_id: Source identifier
            variables: Shared variable request (standardized name -> native
                identifier or None); per-site requests take precedence
            settings: Shared settings overrides
            target_resolution: Resolution or its name
            strict: Raise on unmapped variables instead of recording them
            reader: Reader instance to use instead of the registry's

        Returns:
            EnsembleResult: One SiteResult per input site, in input order

        Raises:
            ConfigurationError: If any site request is invalid
        """
        requests = self.prepare(sites, source_id, variables, settings, target_resolution, strict)
        entry = self.registry.resolve(source_id)
        target = Resolution.parse(target_resolution)

        if reader is None:
            rate_limiter = None
            if entry.remote:
                rate_limiter = RemoteRateLimiter.from_settings(
                    self.registry.build_settings(source_id, settings), name=source_id)
            reader = self.registry.create_reader(source_id, rate_limiter)

        self.processing_logger.log_processing_start('ensemble', {
            'source_id': source_id,
            'n_sites': len(requests),
            'target_resolution': target.value,
            'max_workers': self.max_workers,
            'timeout_seconds': self.timeout_seconds,
        })

        cancel_event = threading.Event()
        deadline = None if self.timeout_seconds is None else time.monotonic() + self.timeout_seconds
        if self.max_workers <= 1 or len(requests) <= 1:
            results = self._collect_serial(requests, reader, cancel_event, deadline)
        else:
            results = self._collect_parallel(requests, reader, cancel_event, deadline)

        for result in results:
            self.processing_logger.log_site_result(result)

        self.processing_logger.log_processing_complete()
        return EnsembleResult(results=results, source_id=source_id, target_resolution=target,
                              summary=self.processing_logger.get_processing_summary())


def ingest_site(site_id: str, source_id: str, variables: Mapping[str, Optional[str]],
                settings: Optional[Mapping[str, Any]] = None, target_resolution: Any = Resolution.DAILY,
                date_start: Optional[DateLike] = None, date_end: Optional[DateLike] = None,
                longitude: Optional[float] = None, latitude: Optional[float] = None,
                strict: bool = True, registry: Optional[SourceRegistry] = None,
                mapper: Optional[VariableMapper] = None,
                reader: Optional[SourceReader] = None) -> SiteResult:
    """
    Ingest one site.

    Args:
        site_id: Site identifier
        source_id: Source identifier (e.g. 'fluxnet', 'cru')
        variables: Standardized name -> native identifier (None for the default)
        settings: Settings overrides for the source
        target_resolution: Resolution or its name
        date_start: Inclusive first date
        date_end: Inclusive last date
        longitude: Site longitude; may be omitted for site-keyed sources
        latitude: Site latitude; may be omitted for site-keyed sources
        strict: Raise on unmapped variables instead of recording them
        registry: Source registry (defaults to the built-in sources)
        mapper: Variable mapper (defaults to the built-in mappings)
        reader: Reader instance to use instead of the registry's

    Returns:
        SiteResult: Harmonized series and any errors of the site

    Raises:
        ConfigurationError: If the request is invalid

    Example:
        >>> result = ingest_site('US-Ha1', 'fluxnet', {'gpp': None},
        ...                      settings={'data_dir': './data/fluxnet', 'threshold_gpp': 0.8},
        ...                      target_resolution='daily',
        ...                      date_start='2005-01-01', date_end='2005-12-31')
        >>> result.series['gpp'].to_series().head()
    """
    collector = EnsembleCollector(registry=registry, mapper=mapper, max_workers=1)
    entry = collector.registry.resolve(source_id)
    if date_start is None or date_end is None:
        raise ConfigurationError(f"A date range is required for site {site_id}", {'site_id': site_id})
    if (longitude is None or latitude is None) and not entry.site_keyed:
        raise ConfigurationError(
            f"Source '{source_id}' is read by coordinate; longitude and latitude are required",
            {'site_id': site_id, 'source_id': source_id}
        )

    site = SiteSpec(site_id=site_id, latitude=latitude, longitude=longitude,
                    date_start=date_start, date_end=date_end)
    return collector.collect([site], source_id, variables, settings, target_resolution,
                             strict=strict, reader=reader)[0]


def ingest_ensemble(sites: Iterable[SiteLike], source_id: str,
                    variables: Optional[Mapping[str, Optional[str]]] = None,
                    settings: Optional[Mapping[str, Any]] = None,
                    target_resolution: Any = Resolution.DAILY,
                    max_workers: Optional[int] = None, timeout_seconds: Optional[float] = None,
                    strict: bool = True, config: Optional[IngestConfig] = None,
                    registry: Optional[SourceRegistry] = None,
                    mapper: Optional[VariableMapper] = None) -> EnsembleResult:
    """
    Ingest a collection of sites.

    Args:
        sites: Ordered SiteSpecs or mappings with SiteSpec fields
        source_id: Source identifier
        variables: Shared variable request
        settings: Shared settings overrides; per-site overrides apply on top
        target_resolution: Resolution or its name
        max_workers: Concurrent site pipelines (defaults to the process configuration)
        timeout_seconds: Global timeout (defaults to the process configuration)
        strict: Raise on unmapped variables instead of recording them
        config: Process configuration (defaults to ``load_ingest_config()``)
        registry: Source registry (defaults to the built-in sources)
        mapper: Variable mapper (defaults to the built-in mappings)

    Returns:
        EnsembleResult: One SiteResult per input site, in input order
    """
    overrides = {}
    if max_workers is not None:
        overrides['max_workers'] = max_workers
    if timeout_seconds is not None:
        overrides['timeout_seconds'] = timeout_seconds
    collector = EnsembleCollector.from_config(config or load_ingest_config(), registry=registry,
                                              mapper=mapper, **overrides)
    return collector.collect(sites, source_id, variables, settings, target_resolution, strict)
