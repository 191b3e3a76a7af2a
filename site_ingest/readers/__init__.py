"""
Source Reader variants for site ingestion.

Each reader extracts raw native-resolution samples for one coordinate and
variable; harmonization happens in the core.
"""

from .base import RawSample, RemoteSourceReader, SourceReader, samples_from_arrays
from .fluxnet import FluxnetReader
from .gridded import GriddedArchiveReader
from .modis import ModisSubsetReader
from .noaa_co2 import NoaaCo2Reader

__all__ = [
    'RawSample',
    'SourceReader',
    'RemoteSourceReader',
    'samples_from_arrays',
    'FluxnetReader',
    'GriddedArchiveReader',
    'ModisSubsetReader',
    'NoaaCo2Reader',
]
