"""
Settings Records and Process Configuration for Site Ingestion

Provides one explicit configuration record per source family, with every
recognized field and its default declared on the record, and the
process-wide ingestion configuration (worker count, timeout, logging).

Settings hierarchy for a site request:
1. Source defaults (declared on the record class)
2. Shared request settings
3. Per-site overrides

Process configuration hierarchy (IngestConfig):
1. Built-in defaults (lowest priority)
2. Configuration file (YAML/JSON)
3. Environment variables
4. Explicit overrides (highest priority)

Unknown keys are rejected at every level with ConfigurationError. All
records are frozen, so a settings object can be shared by concurrent site
pipelines without copying.
"""

import json
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

import yaml

from .logging_utils import ConfigurationError
from .resolution import validate_step

S = TypeVar('S', bound='SourceSettings')


@dataclass(frozen=True)
class SourceSettings:
    """
    Fields shared by every source.

    Attributes:
        max_missing_fraction: Largest tolerated fraction of missing fine
            samples in an aggregated period; above it the period is missing
        subdaily_step_minutes: Step of sub-daily target grids
        seed: Base seed of the precipitation weather generator
        wet_persistence: Lag-1 persistence of the wet/dry Markov chain
        gamma_shape: Shape of the gamma distribution of wet-period amounts
        default_wet_fraction: Wet fraction used when no wet-period count exists
    """
    max_missing_fraction: float = 0.2
    subdaily_step_minutes: int = 60
    seed: int = 0
    wet_persistence: float = 0.3
    gamma_shape: float = 0.75
    default_wet_fraction: float = 0.3

    def __post_init__(self):
        self._validate()

    def _validate(self) -> None:
        if not 0.0 <= self.max_missing_fraction <= 1.0:
            raise ConfigurationError(
                f"max_missing_fraction must be within [0, 1], got {self.max_missing_fraction}")
        try:
            validate_step(self.subdaily_step_minutes)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        if not 0.0 <= self.wet_persistence < 1.0:
            raise ConfigurationError(f"wet_persistence must be within [0, 1), got {self.wet_persistence}")
        if self.gamma_shape <= 0:
            raise ConfigurationError(f"gamma_shape must be positive, got {self.gamma_shape}")
        if not 0.0 < self.default_wet_fraction <= 1.0:
            raise ConfigurationError(
                f"default_wet_fraction must be within (0, 1], got {self.default_wet_fraction}")

    @classmethod
    def field_names(cls) -> frozenset:
        return frozenset(f.name for f in fields(cls))

    @classmethod
    def from_dict(cls: Type[S], values: Optional[Mapping[str, Any]] = None) -> S:
        """
        Build a settings record, rejecting unrecognized fields.

        Args:
            values: Field overrides; absent fields take the defaults

        Returns:
            Settings record

        Raises:
            ConfigurationError: If a key is not a field of this record or a
                value fails validation
        """
        values = dict(values or {})
        unknown = sorted(set(values) - cls.field_names())
        if unknown:
            raise ConfigurationError(
                f"Unknown settings for {cls.__name__}: {unknown}",
                {'unknown_keys': unknown, 'allowed': sorted(cls.field_names())}
            )
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigurationError(f"Malformed settings for {cls.__name__}: {e}") from e

    def merged(self: S, overrides: Optional[Mapping[str, Any]] = None) -> S:
        """Copy with overrides applied; unknown keys are rejected."""
        if not overrides:
            return self
        unknown = sorted(set(overrides) - self.field_names())
        if unknown:
            raise ConfigurationError(
                f"Unknown settings for {type(self).__name__}: {unknown}",
                {'unknown_keys': unknown}
            )
        try:
            return replace(self, **dict(overrides))
        except TypeError as e:
            raise ConfigurationError(f"Malformed settings for {type(self).__name__}: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class FluxnetSettings(SourceSettings):
    """
    Settings for FLUXNET station files.

    Attributes:
        data_dir: Directory holding one daily CSV per site
        file_pattern: Glob pattern of a site's file, formatted with site_id
        threshold_gpp: Minimum non-gap-filled fraction of a daily flux value
        filter_cross_estimate: Drop days where the two GPP partitioning
            estimates disagree beyond the 2.5-97.5 percentile band
        remove_negative: Drop negative flux values
        min_samples_cross_estimate: Paired samples needed to estimate the band
        combine_rules: 'and' keeps a sample only if every rule keeps it,
            'or' keeps it if any enabled rule does
    """
    data_dir: str = './data/fluxnet'
    file_pattern: str = 'FLX_{site_id}_*_DD_*.csv'
    threshold_gpp: float = 0.0
    filter_cross_estimate: bool = False
    remove_negative: bool = False
    min_samples_cross_estimate: int = 30
    combine_rules: str = 'and'

    def _validate(self) -> None:
        super()._validate()
        if not 0.0 <= self.threshold_gpp <= 1.0:
            raise ConfigurationError(f"threshold_gpp must be within [0, 1], got {self.threshold_gpp}")
        if self.combine_rules not in ('and', 'or'):
            raise ConfigurationError(f"combine_rules must be 'and' or 'or', got {self.combine_rules!r}")
        if self.min_samples_cross_estimate < 2:
            raise ConfigurationError("min_samples_cross_estimate must be at least 2")


@dataclass(frozen=True)
class GriddedSettings(SourceSettings):
    """
    Settings for locally stored gridded NetCDF archives.

    Attributes:
        data_dir: Directory holding the archive files
        file_pattern: Glob pattern, formatted with the native variable id
    """
    data_dir: str = './data'
    file_pattern: str = '*{variable}*.nc'


@dataclass(frozen=True)
class RemoteSettings(SourceSettings):
    """
    Settings for remote data services.

    Attributes:
        url: Service endpoint
        timeout_seconds: Per-request timeout
        max_retries: Retries after the first attempt for transient failures
        backoff_factor: Exponential backoff multiplier
        base_delay: Delay before the first retry, in seconds
        rate_limit_calls: Calls allowed per rate_limit_period across workers
        rate_limit_period: Rate limit window in seconds
        api_token: Optional bearer token sent with each request
        product: Product identifier for multi-product services
    """
    url: str = ''
    timeout_seconds: float = 30.0
    max_retries: int = 3
    backoff_factor: float = 2.0
    base_delay: float = 1.0
    rate_limit_calls: int = 10
    rate_limit_period: float = 1.0
    api_token: Optional[str] = None
    product: Optional[str] = None

    def _validate(self) -> None:
        super()._validate()
        if self.max_retries < 0:
            raise ConfigurationError(f"max_retries must be non-negative, got {self.max_retries}")
        if self.backoff_factor < 1.0:
            raise ConfigurationError(f"backoff_factor must be >= 1, got {self.backoff_factor}")
        if self.base_delay < 0:
            raise ConfigurationError(f"base_delay must be non-negative, got {self.base_delay}")
        if self.rate_limit_calls <= 0 or self.rate_limit_period <= 0:
            raise ConfigurationError("rate limit calls and period must be positive")
        if self.timeout_seconds <= 0:
            raise ConfigurationError(f"timeout_seconds must be positive, got {self.timeout_seconds}")


# Source-specific defaults layered over the record defaults
SOURCE_DEFAULTS: Dict[str, Dict[str, Any]] = {
    'fluxnet': {},
    'watch_wfdei': {'data_dir': './data/watch_wfdei', 'file_pattern': '{variable}_WFDEI_*.nc'},
    'cru': {'data_dir': './data/cru', 'file_pattern': 'cru_ts*.{variable}.dat.nc'},
    'etopo1': {'data_dir': './data/etopo1', 'file_pattern': 'ETOPO1*.nc'},
    'co2_mlo': {'url': 'https://gml.noaa.gov/webdata/ccgg/trends/co2/co2_mm_mlo.csv'},
    'modis': {'url': 'https://modis.ornl.gov/rst/api/v1', 'rate_limit_calls': 5},
}


@dataclass(frozen=True)
class IngestConfig:
    """
    Process-wide ingestion configuration.

    Attributes:
        max_workers: Concurrent site pipelines (1 runs sites serially)
        timeout_seconds: Global ensemble timeout, None for no timeout
        log_level: Level of the 'site_ingest' logger
        log_file: Optional log file path
    """
    max_workers: int = 4
    timeout_seconds: Optional[float] = None
    log_level: str = 'INFO'
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.timeout_seconds is not None and self.timeout_seconds <= 0:
            raise ConfigurationError(f"timeout_seconds must be positive, got {self.timeout_seconds}")
        if self.log_level.upper() not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ConfigurationError(f"Unknown log level: {self.log_level}")


# Environment variables mapped to IngestConfig fields, with value parsers
ENV_MAPPINGS = {
    'SITE_INGEST_MAX_WORKERS': ('max_workers', int),
    'SITE_INGEST_TIMEOUT': ('timeout_seconds', float),
    'SITE_INGEST_LOG_LEVEL': ('log_level', str),
    'SITE_INGEST_LOG_FILE': ('log_file', str),
}


def _load_config_file(config_path: str) -> Dict[str, Any]:
    """Load configuration from YAML or JSON file"""
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        if config_path.suffix.lower() in ['.yaml', '.yml']:
            loaded = yaml.safe_load(f) or {}
        elif config_path.suffix.lower() == '.json':
            loaded = json.load(f)
        else:
            raise ConfigurationError(f"Unsupported config file format: {config_path.suffix}")

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Configuration file must contain a mapping: {config_path}")
    return loaded


def _load_environment_config() -> Dict[str, Any]:
    """Load configuration from environment variables"""
    env_config = {}
    for env_var, (key, parser) in ENV_MAPPINGS.items():
        value = os.getenv(env_var)
        if value is None:
            continue
        try:
            env_config[key] = parser(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid value for {env_var}: {value!r}") from e
    return env_config


def load_ingest_config(config_file: Optional[str] = None,
                       overrides: Optional[Mapping[str, Any]] = None) -> IngestConfig:
    """
    Load the process configuration with proper precedence order.

    Args:
        config_file: Optional YAML or JSON file; its 'ingest' section is used
            when present, otherwise the whole mapping
        overrides: Explicit values (highest priority)

    Returns:
        IngestConfig: Validated, immutable configuration

    Raises:
        ConfigurationError: On unknown keys, unreadable files or invalid values
    """
    merged: Dict[str, Any] = {}

    if config_file:
        file_config = _load_config_file(config_file)
        merged.update(file_config.get('ingest', file_config))

    merged.update(_load_environment_config())

    if overrides:
        merged.update(overrides)

    allowed = {f.name for f in fields(IngestConfig)}
    unknown = sorted(set(merged) - allowed)
    if unknown:
        raise ConfigurationError(f"Unknown ingest configuration keys: {unknown}",
                                 {'unknown_keys': unknown})
    return IngestConfig(**merged)
