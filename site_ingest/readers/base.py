"""
Base Source Reader Classes for Site Ingestion

This module provides the abstract base class that every Source Reader
variant inherits from, the immutable RawSample record readers produce, and
a remote-service base class that maps HTTP failures onto the reader error
taxonomy.

Contract:
A reader is given a coordinate, an inclusive date range, a native variable
identifier and the source's settings record, and returns raw samples at the
source's native resolution, in native units, with optional quality values.
It fails only with ReaderError subclasses (NotFoundError, RangeError,
AuthError, RemoteServiceError, RateLimitError, FormatError).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
import logging
import threading

import numpy as np
import requests

from ..logging_utils import (
    AuthError,
    FormatError,
    NotFoundError,
    RangeError,
    RateLimitError,
    RemoteServiceError,
)
from ..resolution import DateLike, Resolution, to_day

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawSample:
    """
    One native-resolution value as produced by a Source Reader.

    Attributes:
        timestamp: Start of the native period (numpy datetime64)
        value: Value in native units, NaN when missing
        quality: Optional quality value, e.g. non-gap-filled fraction in [0, 1]
        resolution: Native resolution tag
    """
    timestamp: np.datetime64
    value: float
    quality: Optional[float] = None
    resolution: Resolution = Resolution.DAILY

    @property
    def is_missing(self) -> bool:
        return not np.isfinite(self.value)


def samples_from_arrays(times: Iterable, values: Iterable, resolution: Resolution,
                        quality: Optional[Iterable] = None) -> List[RawSample]:
    """
    Build RawSamples from parallel arrays.

    Args:
        times: Timestamps convertible to datetime64
        values: Numeric values (NaN/None for missing)
        resolution: Native resolution tag
        quality: Optional parallel quality values

    Returns:
        list: RawSample records in input order
    """
    times = np.asarray(times).astype('datetime64[m]')
    values = np.asarray(values, dtype=float)
    if quality is None:
        quality_values = [None] * len(values)
    else:
        quality_values = [None if q is None or not np.isfinite(q) else float(q)
                          for q in np.asarray(quality, dtype=float)]
    return [
        RawSample(timestamp=t, value=float(v), quality=q, resolution=resolution)
        for t, v, q in zip(times, values, quality_values)
    ]


class SourceReader(ABC):
    """
    Abstract base class for Source Readers.

    Each concrete reader implements source-specific extraction in ``read``.
    Readers hold no per-request state, so one instance can serve concurrent
    site pipelines.

    Attributes:
        native_resolution: Resolution tag attached to produced samples
    """

    native_resolution: Resolution = Resolution.DAILY

    def __init__(self, rate_limiter=None):
        """
        Initialize the reader.

        Args:
            rate_limiter: Optional shared limiter whose ``acquire()`` is
                called before each remote request
        """
        self.rate_limiter = rate_limiter

    @abstractmethod
    def read(self, longitude: float, latitude: float, date_start: DateLike, date_end: DateLike,
             source_variable_id: str, settings: Any, site_id: Optional[str] = None) -> List[RawSample]:
        """
        Extract raw samples for one coordinate and variable.

        Args:
            longitude: Longitude in decimal degrees [-180, 180]
            latitude: Latitude in decimal degrees [-90, 90]
            date_start: Inclusive first date
            date_end: Inclusive last date
            source_variable_id: Native variable identifier
            settings: Settings record of the source
            site_id: Site identifier, used by station-keyed sources

        Returns:
            list: RawSample records at native resolution

        Raises:
            ReaderError: One of the reader error subclasses
        """
        raise NotImplementedError(
            f"{self.__class__.__name__} must implement read()"
        )

    def record_extent(self, longitude: float, latitude: float, source_variable_id: str, settings: Any,
                      site_id: Optional[str] = None) -> Optional[Tuple[np.datetime64, np.datetime64]]:
        """
        First and last day of the record the source holds for a site.

        Used by the quality filter, whose cross-estimate band is estimated
        over the whole record rather than the requested window. Readers
        that cannot tell return None.

        Returns:
            tuple: (first day, last day) as datetime64[D], or None
        """
        return None

    def validate_request(self, longitude: float, latitude: float,
                         date_start: DateLike, date_end: DateLike) -> None:
        """
        Validate coordinate and date range for physical reasonableness.

        Unknown coordinates (None) are accepted; site-keyed readers do not
        use them.

        Raises:
            RangeError: If parameters are outside valid ranges
        """
        if latitude is not None and (not -90.0 <= latitude <= 90.0 or not -180.0 <= longitude <= 180.0):
            raise RangeError(
                f"Coordinate outside valid range: lon={longitude}, lat={latitude}",
                {'longitude': longitude, 'latitude': latitude}
            )
        if to_day(date_start) > to_day(date_end):
            raise RangeError(f"Empty date range: {date_start} to {date_end}")

        logger.debug(f"Validated request: lon={longitude}, lat={latitude}, {date_start} to {date_end}")


class RemoteSourceReader(SourceReader):
    """
    Base class for readers backed by an HTTP service.

    Provides ``_get`` which acquires the shared rate limiter, performs the
    request with the configured timeout and token, and translates failures:
    401/403 -> AuthError, 404 -> NotFoundError, 429 -> RateLimitError,
    other 4xx -> FormatError, 5xx and connection errors -> RemoteServiceError.
    """

    def __init__(self, rate_limiter=None, session: Optional[requests.Session] = None):
        """
        Args:
            rate_limiter: Optional shared limiter
            session: Session used for every request; by default each
                calling thread gets its own requests.Session
        """
        super().__init__(rate_limiter)
        self._session = session
        self._local = threading.local()

    @property
    def session(self) -> requests.Session:
        if self._session is not None:
            return self._session
        session = getattr(self._local, 'session', None)
        if session is None:
            session = self._local.session = requests.Session()
        return session

    def _get(self, url: str, settings: Any, params: Optional[Dict[str, Any]] = None) -> requests.Response:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()

        headers = {'Accept': 'application/json, text/csv, text/plain'}
        token = getattr(settings, 'api_token', None)
        if token:
            headers['Authorization'] = f'Bearer {token}'

        logger.debug(f"GET {url} params={params}")

        try:
            response = self.session.get(url, params=params, headers=headers,
                                        timeout=getattr(settings, 'timeout_seconds', 30.0))
        except requests.Timeout as e:
            raise RemoteServiceError(f"Request timed out: {url}", {'url': url}) from e
        except requests.ConnectionError as e:
            raise RemoteServiceError(f"Connection failed: {url}: {e}", {'url': url}) from e
        except requests.RequestException as e:
            raise RemoteServiceError(f"Request failed: {url}: {e}", {'url': url}) from e

        status = response.status_code
        context = {'url': url, 'status_code': status}
        if status in (401, 403):
            raise AuthError(f"Authentication rejected by {url} (HTTP {status})", context)
        if status == 404:
            raise NotFoundError(f"Resource not found: {url}", context)
        if status == 429:
            raise RateLimitError(f"Rate limited by {url}", context)
        if status >= 500:
            raise RemoteServiceError(f"Server error from {url} (HTTP {status})", context)
        if status >= 400:
            raise FormatError(f"Request rejected by {url} (HTTP {status})", context)

        return response
