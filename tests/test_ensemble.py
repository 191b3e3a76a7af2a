"""
Tests for the Ensemble Collector and the ingestion entry points.
"""

import logging
import time
from types import MappingProxyType
from unittest.mock import MagicMock

import numpy as np
import pytest

from site_ingest.ensemble import EnsembleCollector, ingest_ensemble, ingest_site
from site_ingest.logging_utils import (
    CancelledError,
    ConfigurationError,
    SourceReadError,
    UnknownVariableError,
)
from site_ingest.models import SiteSpec
from site_ingest.registry import SourceEntry, SourceRegistry
from site_ingest.resolution import Resolution
from site_ingest.retry import RemoteRateLimiter
from site_ingest.settings import IngestConfig, RemoteSettings


def _sites(n, date_end='2005-01-31'):
    return [SiteSpec(f's{i}', latitude=40.0 + i * 0.1, longitude=-72.0, date_start='2005-01-01',
                     date_end=date_end) for i in range(n)]


def _site_number(site_id, variable, times):
    """Values identify the site the reader was asked for"""
    return np.full(len(times), float(site_id[1:]))


@pytest.fixture
def registry(registry_factory):
    return registry_factory()


@pytest.fixture
def ingest_logger():
    """The package logger, restored after entry points configure it"""
    logger = logging.getLogger('site_ingest')
    yield logger
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(logging.NOTSET)


def test_results_follow_input_order_under_delays(registry, fake_reader_factory):
    """Completion order differs from input order; results do not"""
    delays = {'s0': 0.3, 's1': 0.2, 's2': 0.1}
    reader = fake_reader_factory(value_fn=_site_number, delays=delays)
    collector = EnsembleCollector(registry=registry, max_workers=4)

    ensemble = collector.collect(_sites(6), 'cru', {'temp': None}, reader=reader)

    assert len(ensemble) == 6
    assert [result.site.site_id for result in ensemble] == [f's{i}' for i in range(6)]
    for i, result in enumerate(ensemble):
        assert result.ok
        np.testing.assert_array_equal(result.series['temp'].values, float(i))


def test_serial_and_parallel_results_match(registry, fake_reader_factory):
    reader = fake_reader_factory(value_fn=_site_number)
    sites = _sites(5)

    serial = EnsembleCollector(registry=registry, max_workers=1).collect(sites, 'cru', {'temp': None},
                                                                          reader=reader)
    parallel = EnsembleCollector(registry=registry, max_workers=3).collect(sites, 'cru', {'temp': None},
                                                                            reader=reader)

    for a, b in zip(serial, parallel):
        np.testing.assert_array_equal(a.series['temp'].values, b.series['temp'].values)


def test_partial_failure_is_isolated(registry, fake_reader_factory):
    """One failing site yields one typed error and nine results"""
    reader = fake_reader_factory(value_fn=_site_number, fail_sites={'s3'})
    collector = EnsembleCollector(registry=registry, max_workers=4)

    ensemble = collector.collect(_sites(10), 'cru', {'temp': None}, reader=reader)

    assert len(ensemble) == 10
    failed = ensemble.failed()
    assert [result.site.site_id for result in failed] == ['s3']
    assert isinstance(failed[0].error, SourceReadError)
    assert failed[0].error.reason == 'NotFoundError'
    assert len(ensemble.succeeded()) == 9
    assert ensemble.summary['processing_stats']['sites_failed'] == 1
    assert ensemble.summary['processing_stats']['sites_processed'] == 9

    report = ensemble.to_dict()
    assert report['sites']['s3']['error'].startswith('SourceReadError')
    assert report['sites']['s0']['variables'] == ['temp']
    assert report['sites']['s0']['missing_periods'] == {'temp': 0}


def test_unexpected_exception_is_recorded(registry, fake_reader_factory):
    def broken(site_id, variable, times):
        if site_id == 's1':
            raise ZeroDivisionError("bug")
        return np.zeros(len(times))

    reader = fake_reader_factory(value_fn=broken)
    ensemble = EnsembleCollector(registry=registry, max_workers=2).collect(_sites(3), 'cru', {'temp': None},
                                                                            reader=reader)

    assert isinstance(ensemble[1].error, ZeroDivisionError)
    assert ensemble[0].ok and ensemble[2].ok


def test_timeout_cancels_unfinished_sites(registry, fake_reader_factory):
    reader = fake_reader_factory(value_fn=_site_number, block_sites={'s1'})
    collector = EnsembleCollector(registry=registry, max_workers=2, timeout_seconds=0.5)

    try:
        started = time.monotonic()
        ensemble = collector.collect(_sites(4), 'cru', {'temp': None}, reader=reader)
        elapsed = time.monotonic() - started
    finally:
        reader.release.set()

    assert elapsed < 5.0
    assert len(ensemble) == 4
    assert isinstance(ensemble[1].error, CancelledError)
    assert all(ensemble[i].ok for i in (0, 2, 3))
    assert ensemble.summary['processing_stats']['sites_cancelled'] == 1
    assert ensemble.summary['processing_stats']['sites_failed'] == 0


def test_serial_timeout_skips_remaining_sites(registry, fake_reader_factory):
    reader = fake_reader_factory(value_fn=_site_number, delays={'s0': 0.3})
    collector = EnsembleCollector(registry=registry, max_workers=1, timeout_seconds=0.1)

    ensemble = collector.collect(_sites(3), 'cru', {'temp': None}, reader=reader)

    assert ensemble[0].ok
    assert isinstance(ensemble[1].error, CancelledError)
    assert isinstance(ensemble[2].error, CancelledError)
    assert [call[0] for call in reader.calls] == ['s0']


def test_configuration_errors_raise_before_any_read(registry, fake_reader_factory):
    reader = fake_reader_factory()
    sites = _sites(4)
    sites[2] = SiteSpec('s2', 40.0, -72.0, '2005-01-01', '2005-01-31', variables={'gpp': None})
    collector = EnsembleCollector(registry=registry, max_workers=2)

    with pytest.raises(UnknownVariableError):
        collector.collect(sites, 'cru', {'temp': None}, reader=reader)
    with pytest.raises(ConfigurationError):
        collector.collect(_sites(2), 'cru', {'temp': None}, settings={'threshold_gpp': 0.8}, reader=reader)
    with pytest.raises(ConfigurationError):
        collector.collect([{'site_id': 'x', 'latitude': 100.0, 'longitude': 0.0,
                            'date_start': '2005-01-01', 'date_end': '2005-01-31'}],
                          'cru', {'temp': None}, reader=reader)

    assert reader.calls == []


def test_non_strict_records_unmapped_variables(registry, fake_reader_factory):
    reader = fake_reader_factory()
    ensemble = EnsembleCollector(registry=registry, max_workers=2).collect(
        _sites(2), 'cru', {'temp': None, 'gpp': None}, strict=False, reader=reader)

    for result in ensemble:
        assert result.ok
        assert list(result.series) == ['temp']
        assert isinstance(result.variable_errors['gpp'], UnknownVariableError)


def test_sites_as_mappings(registry, fake_reader_factory):
    sites = [{'site_id': 'a', 'latitude': 1.0, 'longitude': 2.0, 'date_start': '2005-01-01',
              'date_end': '2005-01-10', 'settings': {'max_missing_fraction': 0.5}}]

    ensemble = EnsembleCollector(registry=registry).collect(sites, 'cru', {'temp': None},
                                                            reader=fake_reader_factory())

    assert ensemble[0].site.site_id == 'a'
    assert len(ensemble[0].series['temp']) == 10


def test_remote_sources_share_a_rate_limiter(fake_reader_factory):
    registry = SourceRegistry(MappingProxyType({
        'co2_mlo': SourceEntry('co2_mlo', fake_reader_factory, Resolution.MONTHLY, RemoteSettings,
                               remote=True),
    }))
    registry.create_reader = MagicMock(wraps=registry.create_reader)

    ensemble = EnsembleCollector(registry=registry, max_workers=2).collect(
        _sites(3), 'co2_mlo', {'co2': None}, settings={'rate_limit_calls': 100}, target_resolution='monthly')

    registry.create_reader.assert_called_once()
    limiter = registry.create_reader.call_args[0][1]
    assert isinstance(limiter, RemoteRateLimiter)
    assert limiter.calls == 100
    assert all(result.ok for result in ensemble)


def test_ingest_site_entry_point(registry, fake_reader_factory):
    result = ingest_site('US-Ha1', 'fluxnet', {'temp': None}, target_resolution='monthly',
                         date_start='2005-01-01', date_end='2005-02-28', registry=registry,
                         reader=fake_reader_factory(value_fn=lambda s, v, t: np.full(len(t), 7.0)))

    assert result.ok
    np.testing.assert_allclose(result.series['temp'].values, [7.0, 7.0])


def test_ingest_site_requires_dates_and_coordinates(registry, fake_reader_factory):
    with pytest.raises(ConfigurationError):
        ingest_site('US-Ha1', 'fluxnet', {'temp': None}, registry=registry, reader=fake_reader_factory())
    # Gridded sources are read by coordinate
    with pytest.raises(ConfigurationError):
        ingest_site('US-Ha1', 'cru', {'temp': None}, date_start='2005-01-01', date_end='2005-01-31',
                    registry=registry, reader=fake_reader_factory())


def test_ingest_site_without_coordinates(registry, fake_reader_factory):
    reader = fake_reader_factory(value_fn=lambda s, v, t: np.full(len(t), 7.0))

    result = ingest_site('US-Ha1', 'fluxnet', {'temp': None}, date_start='2005-01-01',
                         date_end='2005-01-10', registry=registry, reader=reader)

    assert result.ok
    assert not result.site.has_coordinates
    assert reader.calls[0][0] == 'US-Ha1'
    attrs = result.to_dataset().attrs
    assert attrs['site_id'] == 'US-Ha1'
    assert 'latitude' not in attrs and 'longitude' not in attrs


def test_ingest_ensemble_uses_process_config(registry, ingest_logger):
    config = IngestConfig(max_workers=2)

    ensemble = ingest_ensemble(_sites(3), 'cru', {'temp': None}, target_resolution=Resolution.DAILY,
                               config=config, registry=registry)

    assert [result.site.site_id for result in ensemble] == ['s0', 's1', 's2']
    assert ensemble.summary['processing_stats']['sites_processed'] == 3
    assert ensemble.target_resolution is Resolution.DAILY


def test_from_config_sets_up_logging(tmp_path, ingest_logger):
    log_file = tmp_path / 'logs' / 'ingest.log'
    config = IngestConfig(max_workers=3, timeout_seconds=60.0, log_level='DEBUG', log_file=str(log_file))

    collector = EnsembleCollector.from_config(config, max_workers=5)

    assert collector.max_workers == 5
    assert collector.timeout_seconds == 60.0
    assert ingest_logger.level == logging.DEBUG
    assert log_file.exists()
