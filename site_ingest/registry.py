"""
Source Registry for Site Ingestion

Maps a source identifier to its reader class, native temporal resolution
and settings record. The default registry is static configuration built
once at import time and exposed read-only, so concurrent site pipelines can
resolve sources without coordination.

Adding a source means adding one SourceEntry to DEFAULT_SOURCES (and its
variable mapping in variables.SOURCE_VARIABLE_MAP); dispatch logic does not
change.
"""

import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Type

from .logging_utils import UnknownSourceError
from .readers import FluxnetReader, GriddedArchiveReader, ModisSubsetReader, NoaaCo2Reader
from .readers.base import SourceReader
from .resolution import Resolution
from .settings import (
    FluxnetSettings,
    GriddedSettings,
    RemoteSettings,
    SOURCE_DEFAULTS,
    SourceSettings,
)


@dataclass(frozen=True)
class SourceEntry:
    """
    Static description of one data source.

    Attributes:
        source_id: Registry key
        reader_class: SourceReader subclass implementing extraction
        native_resolution: Resolution of the source's records
        settings_class: Settings record class of the source
        native_step_minutes: Step of sub-daily native records
        remote: Whether reads go to a remote service (retries, rate limit)
        site_keyed: Whether records are looked up by site id instead of coordinate
        quality_filtered: Whether the flux quality filter applies
        description: Human-readable description
    """
    source_id: str
    reader_class: Type[SourceReader]
    native_resolution: Resolution
    settings_class: Type[SourceSettings]
    native_step_minutes: Optional[int] = None
    remote: bool = False
    site_keyed: bool = False
    quality_filtered: bool = False
    description: str = ''


DEFAULT_SOURCES: Mapping[str, SourceEntry] = MappingProxyType({
    'fluxnet': SourceEntry(
        'fluxnet', FluxnetReader, Resolution.DAILY, FluxnetSettings,
        site_keyed=True, quality_filtered=True,
        description='FLUXNET2015 daily station files'),
    'watch_wfdei': SourceEntry(
        'watch_wfdei', GriddedArchiveReader, Resolution.DAILY, GriddedSettings,
        description='WATCH-WFDEI daily meteorological forcing (NetCDF)'),
    'cru': SourceEntry(
        'cru', GriddedArchiveReader, Resolution.MONTHLY, GriddedSettings,
        description='CRU TS monthly climate (NetCDF)'),
    'etopo1': SourceEntry(
        'etopo1', GriddedArchiveReader, Resolution.ANNUAL, GriddedSettings,
        description='ETOPO1 global relief (NetCDF, time-invariant)'),
    'co2_mlo': SourceEntry(
        'co2_mlo', NoaaCo2Reader, Resolution.MONTHLY, RemoteSettings, remote=True,
        description='NOAA GML Mauna Loa monthly CO2'),
    'modis': SourceEntry(
        'modis', ModisSubsetReader, Resolution.DAILY, RemoteSettings, remote=True,
        description='MODIS vegetation products via ORNL DAAC subset service'),
})


class SourceRegistry:
    """
    Read-only registry of data sources.

    Provides a centralized way to resolve sources, build their default
    settings and instantiate their readers.
    """

    def __init__(self, sources: Optional[Mapping[str, SourceEntry]] = None,
                 defaults: Optional[Mapping[str, Mapping[str, Any]]] = None):
        """
        Initialize the registry.

        Args:
            sources: Source entries keyed by id (defaults to DEFAULT_SOURCES)
            defaults: Source-specific settings defaults (defaults to SOURCE_DEFAULTS)
        """
        self._sources = MappingProxyType(dict(sources if sources is not None else DEFAULT_SOURCES))
        self._defaults = MappingProxyType({
            key: MappingProxyType(dict(value))
            for key, value in (defaults if defaults is not None else SOURCE_DEFAULTS).items()
        })
        self.logger = logging.getLogger(self.__class__.__name__)

    def resolve(self, source_id: str) -> SourceEntry:
        """
        Resolve a source identifier.

        Args:
            source_id: Source identifier (e.g. 'cru', 'fluxnet')

        Returns:
            SourceEntry: Static description of the source

        Raises:
            UnknownSourceError: If source_id is not registered
        """
        try:
            return self._sources[source_id]
        except KeyError:
            raise UnknownSourceError(
                f"Unknown source: {source_id}. Available: {sorted(self._sources)}",
                {'source_id': source_id}
            ) from None

    def default_settings(self, source_id: str) -> SourceSettings:
        """Default settings record of a source."""
        entry = self.resolve(source_id)
        return entry.settings_class.from_dict(self._defaults.get(source_id, {}))

    def build_settings(self, source_id: str,
                       *overrides: Optional[Mapping[str, Any]]) -> SourceSettings:
        """
        Default settings of a source with successive overrides applied.

        Raises:
            ConfigurationError: On unknown or malformed fields
        """
        settings = self.default_settings(source_id)
        for layer in overrides:
            if isinstance(layer, SourceSettings):
                layer = layer.to_dict()
            settings = settings.merged(layer)
        return settings

    def create_reader(self, source_id: str, rate_limiter=None) -> SourceReader:
        """
        Create the reader instance of a source.

        Args:
            source_id: Source identifier
            rate_limiter: Shared limiter for remote sources

        Returns:
            SourceReader: Reader instance
        """
        entry = self.resolve(source_id)
        if entry.reader_class is GriddedArchiveReader:
            reader = GriddedArchiveReader(rate_limiter, native_resolution=entry.native_resolution)
        else:
            reader = entry.reader_class(rate_limiter)
        self.logger.debug(f"Created {entry.reader_class.__name__} for source '{source_id}'")
        return reader

    def available_sources(self) -> Dict[str, Dict[str, Any]]:
        """
        Describe every registered source.

        Returns:
            dict: Source id -> reader class, native resolution, flags
        """
        return {
            source_id: {
                'reader': entry.reader_class.__name__,
                'native_resolution': entry.native_resolution.value,
                'remote': entry.remote,
                'quality_filtered': entry.quality_filtered,
                'description': entry.description,
            }
            for source_id, entry in self._sources.items()
        }

    def __contains__(self, source_id: str) -> bool:
        return source_id in self._sources

    def __iter__(self):
        return iter(self._sources)


DEFAULT_REGISTRY = SourceRegistry()
