"""
site_ingest - Point-Site Environmental Time Series Ingestion

This package ingests point-location environmental time series from gridded
archives, station files and remote services, and harmonizes them into
standardized series at a requested temporal resolution, for one site or an
ensemble of sites.

Workflow:
- Source registry and reader variants (FLUXNET, WATCH-WFDEI, CRU, ETOPO1,
  NOAA CO2, MODIS)
- Variable mapping to standardized names and canonical units
- Flux quality filtering (completeness, cross-estimate, sign)
- Temporal harmonization (mean-preserving interpolation, precipitation
  weather generator, gap-aware aggregation)
- Ensemble collection with bounded concurrency and per-site error isolation
"""

__version__ = "1.0.0"
__author__ = "site_ingest Development Team"

from .ensemble import EnsembleCollector, ingest_ensemble, ingest_site
from .harmonizer import Harmonizer
from .logging_utils import (
    AuthError,
    CancelledError,
    ConfigurationError,
    FormatError,
    IngestError,
    InsufficientDataError,
    NotFoundError,
    RangeError,
    RateLimitError,
    ReaderError,
    RemoteServiceError,
    SourceReadError,
    UnknownSourceError,
    UnknownVariableError,
    setup_ingest_logging,
)
from .models import EnsembleResult, HarmonizedSeries, SiteResult, SiteSpec
from .quality_control import FilterReport, QualityFilter
from .registry import DEFAULT_REGISTRY, SourceEntry, SourceRegistry
from .resolution import Resolution
from .settings import (
    FluxnetSettings,
    GriddedSettings,
    IngestConfig,
    RemoteSettings,
    SourceSettings,
    load_ingest_config,
)
from .variables import VariableKind, VariableMapper
from .weather_generator import PrecipitationGenerator
