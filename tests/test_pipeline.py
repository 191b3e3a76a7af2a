"""
Tests for the Site Pipeline: validation, reading, filtering and harmonization
of one site.
"""

import threading
from unittest.mock import MagicMock

import numpy as np
import pytest

from site_ingest.logging_utils import (
    CancelledError,
    ConfigurationError,
    FormatError,
    NotFoundError,
    RemoteServiceError,
    SourceReadError,
    UnknownSourceError,
    UnknownVariableError,
)
from site_ingest.models import SiteSpec
from site_ingest.pipeline import SitePipeline, align_to, samples_to_arrays
from site_ingest.readers.base import RawSample
from site_ingest.readers.modis import ModisSubsetReader
from site_ingest.resolution import Resolution
from site_ingest.retry import RetryManager
from site_ingest.settings import FluxnetSettings, GriddedSettings


@pytest.fixture
def site():
    return SiteSpec('US-Ha1', latitude=42.54, longitude=-72.17,
                    date_start='2005-01-01', date_end='2005-03-31')


@pytest.fixture
def flux_pipeline(registry_factory):
    return SitePipeline(registry=registry_factory(quality_filtered=True))


@pytest.fixture
def monthly_pipeline(registry_factory):
    return SitePipeline(registry=registry_factory(native_resolution=Resolution.MONTHLY))


def _no_sleep(seconds):
    pass


# ---------------------------------------------------------------------------
# Request validation
# ---------------------------------------------------------------------------

def test_prepare_resolves_variables_and_settings(flux_pipeline, site):
    request = flux_pipeline.prepare(site, 'fluxnet', {'gpp': None, 'temp': None},
                                    settings={'threshold_gpp': 0.8}, target_resolution='monthly')

    assert request.variables == {'gpp': 'GPP_NT_VUT_REF', 'temp': 'TA_F'}
    assert isinstance(request.settings, FluxnetSettings)
    assert request.settings.threshold_gpp == 0.8
    assert request.target_resolution is Resolution.MONTHLY


def test_prepare_site_overrides_take_precedence(flux_pipeline):
    site = SiteSpec('DE-Tha', 50.96, 13.57, '2005-01-01', '2005-01-31',
                    variables={'le': None}, settings={'threshold_gpp': 0.5})

    request = flux_pipeline.prepare(site, 'fluxnet', {'gpp': None}, settings={'threshold_gpp': 0.8})

    assert request.variables == {'le': 'LE_F_MDS'}
    assert request.settings.threshold_gpp == 0.5


def test_prepare_rejects_caller_mistakes(flux_pipeline, site):
    with pytest.raises(UnknownSourceError):
        flux_pipeline.prepare(site, 'not_a_source', {'gpp': None})
    with pytest.raises(UnknownVariableError):
        flux_pipeline.prepare(site, 'fluxnet', {'elv': None})
    with pytest.raises(UnknownVariableError):
        flux_pipeline.prepare(site, 'fluxnet', {'gpp': 'LE_F_MDS'})
    with pytest.raises(ConfigurationError):
        flux_pipeline.prepare(site, 'fluxnet', {'gpp': None}, settings={'threshold': 0.8})
    with pytest.raises(ConfigurationError):
        flux_pipeline.prepare(site, 'fluxnet', {'gpp': None}, target_resolution='weekly')
    with pytest.raises(ConfigurationError):
        flux_pipeline.prepare(site, 'fluxnet', {})


def test_prepare_non_strict_records_unmapped(flux_pipeline, site):
    request = flux_pipeline.prepare(site, 'fluxnet', {'gpp': None, 'elv': None}, strict=False)

    assert request.variables == {'gpp': 'GPP_NT_VUT_REF'}
    assert isinstance(request.unmapped['elv'], UnknownVariableError)


def test_site_spec_validation():
    with pytest.raises(ConfigurationError):
        SiteSpec('', 0.0, 0.0, '2005-01-01', '2005-01-31')
    with pytest.raises(ConfigurationError):
        SiteSpec('s', 91.0, 0.0, '2005-01-01', '2005-01-31')
    with pytest.raises(ConfigurationError):
        SiteSpec('s', 0.0, 0.0, '2005-02-01', '2005-01-31')
    with pytest.raises(ConfigurationError):
        SiteSpec('s', 0.0, 0.0, 'not a date', '2005-01-31')
    with pytest.raises(ConfigurationError):
        SiteSpec.from_dict({'site_id': 's', 'lat': 0.0})


def test_site_spec_malformed_coordinates():
    with pytest.raises(ConfigurationError):
        SiteSpec('s', 'abc', 0.0, '2005-01-01', '2005-01-31')
    with pytest.raises(ConfigurationError):
        SiteSpec('s', 0.0, [1.0], '2005-01-01', '2005-01-31')
    with pytest.raises(ConfigurationError):
        SiteSpec.from_dict({'site_id': 's', 'latitude': '42.5N', 'longitude': -72.17,
                            'date_start': '2005-01-01', 'date_end': '2005-01-31'})
    # Only one of the pair
    with pytest.raises(ConfigurationError):
        SiteSpec('s', None, -72.17, '2005-01-01', '2005-01-31')

    site = SiteSpec('s', '42.54', '-72.17', '2005-01-01', '2005-01-31')
    assert site.has_coordinates
    assert (site.latitude, site.longitude) == (42.54, -72.17)


def test_unknown_coordinates_only_for_site_keyed_sources(flux_pipeline):
    site = SiteSpec('US-Ha1', None, None, '2005-01-01', '2005-01-31')

    assert not site.has_coordinates
    assert flux_pipeline.prepare(site, 'fluxnet', {'gpp': None}).site is site
    with pytest.raises(ConfigurationError):
        flux_pipeline.prepare(site, 'cru', {'temp': None})


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

def test_completeness_filter_before_harmonization(fake_reader_factory, flux_pipeline, site):
    """Low-quality days are dropped at native resolution"""
    def quality(site_id, variable, times):
        return np.where(np.arange(len(times)) % 2 == 0, 0.5, 1.0)

    reader = fake_reader_factory(value_fn=lambda s, v, t: np.full(len(t), 4.0), quality_fn=quality)
    request = flux_pipeline.prepare(site, 'fluxnet', {'gpp': None}, settings={'threshold_gpp': 0.8})

    result = flux_pipeline.run(request, reader)

    gpp = result.series['gpp']
    assert result.ok
    assert len(gpp) == 90
    assert np.all(np.isnan(gpp.values[::2]))
    np.testing.assert_array_equal(gpp.values[1::2], 4.0)
    assert result.filter_reports['gpp'].dropped == {'completeness': 45}
    assert gpp.attrs['source_id'] == 'fluxnet'
    assert gpp.attrs['source_variable'] == 'GPP_NT_VUT_REF'


def test_cross_estimate_reads_companion(fake_reader_factory, flux_pipeline, site):
    offsets = np.linspace(-1.0, 1.0, 90)

    def values(site_id, variable, times):
        if variable == 'GPP_DT_VUT_REF':
            return 5.0 + offsets
        return np.full(len(times), 5.0)

    reader = fake_reader_factory(value_fn=values)
    request = flux_pipeline.prepare(site, 'fluxnet', {'gpp': None}, settings={'filter_cross_estimate': True})

    result = flux_pipeline.run(request, reader)

    assert [call[1] for call in reader.calls] == ['GPP_NT_VUT_REF', 'GPP_DT_VUT_REF']
    dropped = np.flatnonzero(np.isnan(result.series['gpp'].values))
    np.testing.assert_array_equal(dropped, [0, 1, 2, 87, 88, 89])


def test_cross_estimate_band_is_independent_of_request_window(fake_reader_factory, flux_pipeline):
    """The band comes from the site's whole record, so a day's outcome does not depend on the request"""
    def values(site_id, variable, times):
        days = (times - np.datetime64('2005-01-01')).astype('timedelta64[D]').astype(float)
        if variable == 'GPP_DT_VUT_REF':
            return 5.0 + np.sin(days * 1.3)
        return np.full(len(times), 5.0)

    reader = fake_reader_factory(value_fn=values, record=('2005-01-01', '2005-12-31'))

    def run(date_start, date_end):
        site = SiteSpec('US-Ha1', 42.54, -72.17, date_start, date_end)
        request = flux_pipeline.prepare(site, 'fluxnet', {'gpp': None},
                                        settings={'filter_cross_estimate': True})
        result = flux_pipeline.run(request, reader)
        march = result.series['gpp'].to_series()['2005-03-01':'2005-03-10'].values
        return march, result.filter_reports['gpp']

    short, short_report = run('2005-03-01', '2005-03-10')
    full, full_report = run('2005-01-01', '2005-12-31')

    np.testing.assert_array_equal(short, full)
    assert len(short) == 10
    assert short_report.band == full_report.band
    # Ten requested days are fewer than min_samples, but the record is not
    assert short_report.skipped == {}
    assert short_report.total_samples == 365
    assert reader.extent_calls == [('US-Ha1', 'GPP_NT_VUT_REF')] * 2


def test_derived_variables_name_their_source_variable(fake_reader_factory, flux_pipeline, site):
    request = flux_pipeline.prepare(site, 'fluxnet', {'ppfd': None, 'swin': None})

    result = flux_pipeline.run(request, fake_reader_factory())

    assert result.series['ppfd'].attrs['source_variable'] == 'SW_IN_F'
    assert result.series['ppfd'].attrs['derived_from'] == 'swin'
    assert 'derived_from' not in result.series['swin'].attrs


def test_filter_then_aggregate(fake_reader_factory, flux_pipeline, site):
    """Filtered days count as missing in the monthly threshold"""
    def quality(site_id, variable, times):
        q = np.ones(len(times))
        q[:10] = 0.0          # January loses 10 of 31 days
        return q

    reader = fake_reader_factory(value_fn=lambda s, v, t: np.full(len(t), 2.0), quality_fn=quality)
    request = flux_pipeline.prepare(site, 'fluxnet', {'gpp': None}, settings={'threshold_gpp': 0.8},
                                    target_resolution='monthly')

    gpp = flux_pipeline.run(request, reader).series['gpp']

    assert np.isnan(gpp.values[0])
    np.testing.assert_array_equal(gpp.values[1:], [2.0, 2.0])


def test_units_are_converted(fake_reader_factory, monthly_pipeline, site):
    reader = fake_reader_factory(native_resolution=Resolution.MONTHLY,
                                 value_fn=lambda s, v, t: np.full(len(t), 12.5))
    request = monthly_pipeline.prepare(site, 'cru', {'vpd': None}, target_resolution='monthly')

    vpd = monthly_pipeline.run(request, reader).series['vpd']

    np.testing.assert_allclose(vpd.values, 1250.0)
    assert vpd.units == 'Pa'


def test_precipitation_uses_wet_day_counts(fake_reader_factory, monthly_pipeline, site):
    def values(site_id, variable, times):
        return np.full(len(times), 10.0 if variable == 'wet' else 62.0)

    reader = fake_reader_factory(native_resolution=Resolution.MONTHLY, value_fn=values)
    request = monthly_pipeline.prepare(site, 'cru', {'prec': None}, target_resolution='daily')

    prec = monthly_pipeline.run(request, reader).series['prec']

    assert sorted({call[1] for call in reader.calls}) == ['pre', 'wet']
    january = prec.values[:31]
    assert january.sum() == 62.0
    assert np.count_nonzero(january) == 10


def test_missing_wet_day_counts_fall_back(fake_reader_factory, monthly_pipeline, site):
    def values(site_id, variable, times):
        if variable == 'wet':
            raise NotFoundError("no wet-day archive")
        return np.full(len(times), 62.0)

    reader = fake_reader_factory(native_resolution=Resolution.MONTHLY, value_fn=values)
    request = monthly_pipeline.prepare(site, 'cru', {'prec': None}, target_resolution='daily')

    result = monthly_pipeline.run(request, reader)

    january = result.series['prec'].values[:31]
    assert result.ok and not result.variable_errors
    assert january.sum() == 62.0
    assert np.count_nonzero(january) == 9


def test_variable_failure_is_isolated(fake_reader_factory, monthly_pipeline, site):
    def values(site_id, variable, times):
        if variable == 'tmn':
            raise FormatError("corrupt archive")
        return np.full(len(times), 3.0)

    reader = fake_reader_factory(native_resolution=Resolution.MONTHLY, value_fn=values)
    request = monthly_pipeline.prepare(site, 'cru', {'temp': None, 'tmin': None}, target_resolution='monthly')

    result = monthly_pipeline.run(request, reader)

    assert result.ok
    assert list(result.series) == ['temp']
    error = result.variable_errors['tmin']
    assert isinstance(error, SourceReadError)
    assert error.reason == 'FormatError'


def test_site_error_when_no_variable_succeeds(fake_reader_factory, monthly_pipeline, site):
    reader = fake_reader_factory(native_resolution=Resolution.MONTHLY, fail_sites={'US-Ha1'})
    request = monthly_pipeline.prepare(site, 'cru', {'temp': None}, target_resolution='monthly')

    result = monthly_pipeline.run(request, reader)

    assert not result.ok
    assert isinstance(result.error, SourceReadError)
    assert result.error.reason == 'NotFoundError'


def test_transient_errors_are_retried(fake_reader_factory, monthly_pipeline, site):
    attempts = []

    def values(site_id, variable, times):
        attempts.append(variable)
        if len(attempts) < 3:
            raise RemoteServiceError("503")
        return np.full(len(times), 1.0)

    reader = fake_reader_factory(native_resolution=Resolution.MONTHLY, value_fn=values)
    request = monthly_pipeline.prepare(site, 'cru', {'temp': None}, target_resolution='monthly')
    retry = RetryManager(max_retries=3, base_delay=0.0, sleep=_no_sleep)

    result = monthly_pipeline.run(request, reader, retry=retry)

    assert result.ok
    assert len(attempts) == 3


def test_cancelled_site_stops_before_reading(fake_reader_factory, monthly_pipeline, site):
    reader = fake_reader_factory(native_resolution=Resolution.MONTHLY)
    request = monthly_pipeline.prepare(site, 'cru', {'temp': None})
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(CancelledError):
        monthly_pipeline.run(request, reader, cancel_event=cancel_event)
    assert reader.calls == []


def test_modis_composites_reach_monthly_target():
    """Eight-day composites cover every day, so each month is complete"""
    composite_starts = np.arange('2005-01-01', '2006-01-01', 8, dtype='datetime64[D]')
    dates = [{'modis_date': f'A2005{i * 8 + 1:03d}', 'calendar_date': str(day)}
             for i, day in enumerate(composite_starts)]

    def get(url, params=None, headers=None, timeout=None):
        response = MagicMock(status_code=200)
        if url.endswith('/dates'):
            response.json.return_value = {'dates': dates}
        else:
            chunk = [d for d in dates if params['startDate'] <= d['modis_date'] <= params['endDate']]
            response.json.return_value = {
                'scale': '0.01', 'subset': [{'calendar_date': d['calendar_date'], 'data': [50]} for d in chunk]}
        return response

    session = MagicMock()
    session.get.side_effect = get
    pipeline = SitePipeline()
    site = SiteSpec('US-Ha1', 42.54, -72.17, '2005-01-01', '2005-12-31')
    request = pipeline.prepare(site, 'modis', {'fapar': None}, target_resolution='monthly',
                               settings={'url': 'https://modis.example/api/v1', 'product': 'MOD15A2H'})

    result = pipeline.run(request, ModisSubsetReader(session=session))

    fapar = result.series['fapar']
    assert len(fapar) == 12
    np.testing.assert_allclose(fapar.values, 0.5)


def test_result_to_dataset(fake_reader_factory, monthly_pipeline, site):
    reader = fake_reader_factory(native_resolution=Resolution.MONTHLY)
    request = monthly_pipeline.prepare(site, 'cru', {'temp': None, 'tmax': None}, target_resolution='monthly')

    dataset = monthly_pipeline.run(request, reader).to_dataset()

    assert set(dataset.data_vars) == {'temp', 'tmax'}
    assert dataset.attrs['site_id'] == 'US-Ha1'
    assert dataset.sizes['time'] == 3
    assert dataset.attrs['latitude'] == 42.54


def test_samples_to_arrays_and_alignment():
    samples = [
        RawSample(np.datetime64('2005-01-01T00:00'), 1.0, 0.5),
        RawSample(np.datetime64('2005-01-02T00:00'), 2.0),
    ]
    times, values, quality = samples_to_arrays(samples)

    np.testing.assert_array_equal(values, [1.0, 2.0])
    assert quality[0] == 0.5 and np.isnan(quality[1])
    assert samples_to_arrays(samples[1:])[2] is None

    aligned = align_to(times, times[1:], np.array([7.0]))
    assert np.isnan(aligned[0]) and aligned[1] == 7.0


def test_settings_records_are_source_specific(monthly_pipeline, site):
    request = monthly_pipeline.prepare(site, 'cru', {'temp': None}, settings={'data_dir': '/archive'})
    assert isinstance(request.settings, GriddedSettings)
    assert request.settings.data_dir == '/archive'
