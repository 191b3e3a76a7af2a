"""
Shared fixtures for site ingestion tests.

Provides an in-memory Source Reader and a registry built around it, so that
pipeline and ensemble tests run without files or network access.
"""

import threading
import time
from types import MappingProxyType

import numpy as np
import pytest

from site_ingest.logging_utils import NotFoundError, RangeError
from site_ingest.readers.base import SourceReader, samples_from_arrays
from site_ingest.registry import SourceEntry, SourceRegistry
from site_ingest.resolution import Resolution, period_grid
from site_ingest.settings import FluxnetSettings, GriddedSettings


class FakeReader(SourceReader):
    """
    Reader serving synthetic series.

    Values are generated by ``value_fn(site_id, variable, times)``; sites in
    ``fail_sites`` raise ``error``; ``delays`` maps site ids to seconds of
    sleep before returning; sites in ``block_sites`` wait for ``release``.
    With ``record=(first, last)`` only that span of days is served and it is
    reported as the record extent.
    """

    def __init__(self, rate_limiter=None, native_resolution=Resolution.DAILY, value_fn=None,
                 quality_fn=None, fail_sites=(), error=None, delays=None, block_sites=(),
                 record=None):
        super().__init__(rate_limiter)
        self.native_resolution = native_resolution
        self.value_fn = value_fn or (lambda site_id, variable, times: np.arange(len(times), dtype=float))
        self.quality_fn = quality_fn
        self.fail_sites = set(fail_sites)
        self.error = error or NotFoundError("synthetic failure")
        self.delays = delays or {}
        self.block_sites = set(block_sites)
        self.record = None if record is None else tuple(np.datetime64(day, 'D') for day in record)
        self.release = threading.Event()
        self.calls = []
        self.extent_calls = []
        self._lock = threading.Lock()

    def read(self, longitude, latitude, date_start, date_end, source_variable_id, settings,
             site_id=None):
        with self._lock:
            self.calls.append((site_id, source_variable_id, str(date_start), str(date_end)))
        if site_id in self.delays:
            time.sleep(self.delays[site_id])
        if site_id in self.block_sites:
            self.release.wait(timeout=10)
        if site_id in self.fail_sites:
            raise self.error

        if self.record is not None:
            date_start = max(np.datetime64(date_start, 'D'), self.record[0])
            date_end = min(np.datetime64(date_end, 'D'), self.record[1])
            if date_start > date_end:
                raise RangeError(f"No records for {site_id} in the requested window")
        times = period_grid(self.native_resolution, date_start, date_end)
        values = self.value_fn(site_id, source_variable_id, times)
        quality = None if self.quality_fn is None else self.quality_fn(site_id, source_variable_id, times)
        return samples_from_arrays(times, values, self.native_resolution, quality)

    def record_extent(self, longitude, latitude, source_variable_id, settings, site_id=None):
        with self._lock:
            self.extent_calls.append((site_id, source_variable_id))
        return self.record


def make_registry(native_resolution=Resolution.DAILY, quality_filtered=False):
    """Registry whose 'fluxnet' and 'cru' entries are served by FakeReader."""
    return SourceRegistry(MappingProxyType({
        'fluxnet': SourceEntry('fluxnet', FakeReader, Resolution.DAILY, FluxnetSettings,
                               site_keyed=True, quality_filtered=quality_filtered),
        'cru': SourceEntry('cru', FakeReader, native_resolution, GriddedSettings),
    }))


@pytest.fixture
def fake_reader_factory():
    return FakeReader


@pytest.fixture
def registry_factory():
    return make_registry
