"""
Variable Registry and Mapper - Standardized Variables for All Sources

This module is the single source of truth for the standardized variables
produced by site ingestion and for how each data source names and scales
them. It consolidates:

- VARIABLE_REGISTRY: standardized name -> kind, canonical units, physical
  lower bound and description
- SOURCE_VARIABLE_MAP: source id -> standardized name -> native identifier,
  unit conversion and optional companions (parallel estimate used by the
  flux quality filter, wet-day counts used by the weather generator)

Scientific Context:
The variable kind decides how a series is harmonized across resolutions:
- STATE (temperature, radiation, pressure, VPD): averaged when aggregating,
  mean-preserving interpolation when disaggregating
- FLUX_TOTAL (amounts accumulated per period): summed when aggregating,
  sum-preserving interpolation when disaggregating
- PRECIPITATION: summed when aggregating, stochastic weather generator when
  disaggregating
- STATIC (elevation, soil attributes): first value, broadcast in time
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from .logging_utils import UnknownVariableError, UnknownSourceError
from .units_constants import (
    CANONICAL_UNITS,
    UnitConversion,
    hpa_to_pa,
    identity,
    kelvin_to_celsius,
    kpa_to_pa,
    precipitation_rate_to_daily_depth,
    shortwave_to_ppfd,
)


class VariableKind(Enum):
    STATE = 'state'
    FLUX_TOTAL = 'flux_total'
    PRECIPITATION = 'precipitation'
    STATIC = 'static'

    @property
    def reducer(self) -> str:
        """Aggregation reducer used when downsampling this kind"""
        return {
            VariableKind.STATE: 'mean',
            VariableKind.FLUX_TOTAL: 'sum',
            VariableKind.PRECIPITATION: 'sum',
            VariableKind.STATIC: 'first',
        }[self]


# Master variable registry with harmonization metadata
VARIABLE_REGISTRY: Dict[str, Dict[str, Any]] = {
    'temp': {'kind': VariableKind.STATE, 'lower_bound': None,
             'description': 'Mean air temperature'},
    'tmin': {'kind': VariableKind.STATE, 'lower_bound': None,
             'description': 'Minimum air temperature'},
    'tmax': {'kind': VariableKind.STATE, 'lower_bound': None,
             'description': 'Maximum air temperature'},
    'prec': {'kind': VariableKind.PRECIPITATION, 'lower_bound': 0.0,
             'description': 'Total precipitation depth per period'},
    'snow': {'kind': VariableKind.PRECIPITATION, 'lower_bound': 0.0,
             'description': 'Snowfall water equivalent per period'},
    'vpd': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
            'description': 'Vapour pressure deficit'},
    'patm': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
             'description': 'Atmospheric pressure'},
    'netrad': {'kind': VariableKind.STATE, 'lower_bound': None,
               'description': 'Net radiation'},
    'swin': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
             'description': 'Incoming shortwave radiation'},
    'lwin': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
             'description': 'Incoming longwave radiation'},
    'ppfd': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
             'description': 'Photosynthetic photon flux density'},
    'gpp': {'kind': VariableKind.STATE, 'lower_bound': None,
            'description': 'Gross primary production (flux rate)'},
    'le': {'kind': VariableKind.STATE, 'lower_bound': None,
           'description': 'Latent heat flux'},
    'co2': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
            'description': 'Atmospheric CO2 mole fraction'},
    'fapar': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
              'description': 'Fraction of absorbed photosynthetically active radiation'},
    'ndvi': {'kind': VariableKind.STATE, 'lower_bound': None,
             'description': 'Normalized difference vegetation index'},
    'evi': {'kind': VariableKind.STATE, 'lower_bound': None,
            'description': 'Enhanced vegetation index'},
    'lai': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
            'description': 'Leaf area index'},
    'ccov': {'kind': VariableKind.STATE, 'lower_bound': 0.0,
             'description': 'Cloud cover'},
    'elv': {'kind': VariableKind.STATIC, 'lower_bound': None,
            'description': 'Elevation above sea level'},
    'wet': {'kind': VariableKind.FLUX_TOTAL, 'lower_bound': 0.0,
            'description': 'Number of wet days per period'},
}


# Per-source mapping: standardized name -> native identifier and conversion
SOURCE_VARIABLE_MAP: Dict[str, Dict[str, Dict[str, Any]]] = {
    'fluxnet': {
        'temp': {'native': 'TA_F', 'conversion': identity('degC')},
        'prec': {'native': 'P_F', 'conversion': identity('mm')},
        'vpd': {'native': 'VPD_F', 'conversion': hpa_to_pa()},
        'patm': {'native': 'PA_F', 'conversion': kpa_to_pa()},
        'netrad': {'native': 'NETRAD', 'conversion': identity('W m-2')},
        'swin': {'native': 'SW_IN_F', 'conversion': identity('W m-2')},
        'lwin': {'native': 'LW_IN_F', 'conversion': identity('W m-2')},
        'ppfd': {'native': 'SW_IN_F', 'conversion': shortwave_to_ppfd()},
        'le': {'native': 'LE_F_MDS', 'conversion': identity('W m-2')},
        'gpp': {
            'native': 'GPP_NT_VUT_REF',
            'conversion': identity('g C m-2 d-1'),
            'companions': {
                'GPP_NT_VUT_REF': 'GPP_DT_VUT_REF',
                'GPP_DT_VUT_REF': 'GPP_NT_VUT_REF',
            },
        },
    },
    'watch_wfdei': {
        'temp': {'native': 'Tair', 'conversion': kelvin_to_celsius()},
        'prec': {'native': 'Rainf', 'conversion': precipitation_rate_to_daily_depth()},
        'snow': {'native': 'Snowf', 'conversion': precipitation_rate_to_daily_depth()},
        'swin': {'native': 'SWdown', 'conversion': identity('W m-2')},
        'lwin': {'native': 'LWdown', 'conversion': identity('W m-2')},
        'ppfd': {'native': 'SWdown', 'conversion': shortwave_to_ppfd()},
        'patm': {'native': 'PSurf', 'conversion': identity('Pa')},
    },
    'cru': {
        'temp': {'native': 'tmp', 'conversion': identity('degC')},
        'tmin': {'native': 'tmn', 'conversion': identity('degC')},
        'tmax': {'native': 'tmx', 'conversion': identity('degC')},
        'prec': {'native': 'pre', 'conversion': identity('mm'), 'wet_days': 'wet'},
        'vpd': {'native': 'vpd', 'conversion': hpa_to_pa()},
        'ccov': {'native': 'cld', 'conversion': identity('%')},
        'wet': {'native': 'wet', 'conversion': identity('days')},
    },
    'etopo1': {
        'elv': {'native': 'z', 'conversion': identity('m')},
    },
    'co2_mlo': {
        'co2': {'native': 'average', 'conversion': identity('ppm')},
    },
    'modis': {
        'fapar': {'native': 'Fpar_500m', 'conversion': identity('1')},
        'lai': {'native': 'Lai_500m', 'conversion': identity('m2 m-2')},
        'ndvi': {'native': '250m_16_days_NDVI', 'conversion': identity('1')},
        'evi': {'native': '250m_16_days_EVI', 'conversion': identity('1')},
    },
}


@dataclass(frozen=True)
class VariableSpec:
    """Harmonization metadata of one standardized variable"""
    name: str
    kind: VariableKind
    units: str
    lower_bound: Optional[float]
    description: str


class VariableMapper:
    """
    Translate standardized variable names to source-native identifiers.

    Pure lookups over read-only tables; a mapper is safe to share across
    concurrent site pipelines.
    """

    def __init__(self, source_map: Optional[Mapping[str, Mapping[str, Mapping[str, Any]]]] = None,
                 registry: Optional[Mapping[str, Mapping[str, Any]]] = None):
        self._source_map = source_map if source_map is not None else SOURCE_VARIABLE_MAP
        self._registry = registry if registry is not None else VARIABLE_REGISTRY

    def _entry(self, name: str, source_id: str) -> Mapping[str, Any]:
        if source_id not in self._source_map:
            raise UnknownSourceError(
                f"No variable mapping for source '{source_id}'",
                {'source_id': source_id}
            )
        entry = self._source_map[source_id].get(name)
        if entry is None:
            available = sorted(self._source_map[source_id])
            raise UnknownVariableError(
                f"Variable '{name}' is not available from source '{source_id}'. Available: {available}",
                {'variable': name, 'source_id': source_id}
            )
        return entry

    def map(self, name: str, source_id: str) -> str:
        """
        Get the default native identifier for a standardized variable.

        Args:
            name: Standardized variable name (e.g. 'temp')
            source_id: Source identifier (e.g. 'cru')

        Returns:
            str: Native identifier used by the source reader

        Raises:
            UnknownVariableError: If the source has no mapping for the name
        """
        return self._entry(name, source_id)['native']

    def inverse(self, native_id: str, source_id: str) -> str:
        """
        Get the standardized name for a native identifier.

        When several variables are derived from one native column (swin and
        ppfd from shortwave radiation), the first declared is the one the
        column measures; the pipeline records it as ``derived_from`` on the
        others.

        Raises:
            UnknownVariableError: If no standardized variable maps to native_id
        """
        for name, entry in self._source_map.get(source_id, {}).items():
            if entry['native'] == native_id or native_id in entry.get('companions', {}):
                return name
        raise UnknownVariableError(
            f"Native variable '{native_id}' has no standardized name for source '{source_id}'",
            {'native_id': native_id, 'source_id': source_id}
        )

    def resolve(self, name: str, source_id: str, native_id: Optional[str] = None) -> str:
        """
        Native identifier for a request entry.

        ``native_id`` overrides the default identifier; it must be either the
        default or one of its declared companions.
        """
        entry = self._entry(name, source_id)
        if native_id is None or native_id == entry['native']:
            return entry['native']
        if native_id in entry.get('companions', {}):
            return native_id
        raise UnknownVariableError(
            f"Native variable '{native_id}' cannot provide '{name}' for source '{source_id}'",
            {'variable': name, 'native_id': native_id, 'source_id': source_id}
        )

    def conversion(self, name: str, source_id: str) -> UnitConversion:
        return self._entry(name, source_id)['conversion']

    def companion(self, name: str, source_id: str, native_id: Optional[str] = None) -> Optional[str]:
        """Parallel estimate of the same quantity, if the source has one."""
        entry = self._entry(name, source_id)
        return entry.get('companions', {}).get(native_id or entry['native'])

    def wet_days_id(self, name: str, source_id: str) -> Optional[str]:
        """Native identifier of the wet-period counts accompanying a precipitation variable."""
        return self._entry(name, source_id).get('wet_days')

    def spec(self, name: str) -> VariableSpec:
        """
        Harmonization metadata for a standardized variable.

        Raises:
            UnknownVariableError: If the name is not registered
        """
        if name not in self._registry:
            raise UnknownVariableError(f"Unknown standardized variable: {name}", {'variable': name})
        config = self._registry[name]
        return VariableSpec(
            name=name,
            kind=config['kind'],
            units=CANONICAL_UNITS[name],
            lower_bound=config.get('lower_bound'),
            description=config.get('description', ''),
        )

    def variables_for_source(self, source_id: str) -> List[str]:
        """
        Get all standardized variables a source can provide.

        Args:
            source_id: Source identifier

        Returns:
            list: Standardized variable names
        """
        return sorted(self._source_map.get(source_id, {}))


def get_all_variables() -> List[str]:
    """
    Get list of all registered standardized variables.

    Returns:
        list: All variable names in registry
    """
    return list(VARIABLE_REGISTRY.keys())


def validate_variable(variable_name: str) -> bool:
    return variable_name in VARIABLE_REGISTRY
