"""
Physical Constants and Unit Conversions for Site Ingestion

This module provides the canonical units table for standardized variables
and the linear unit conversions applied by the Variable Mapper when source
values are translated into canonical units.

Scientific Context:
Sources report the same physical quantity in different units (Kelvin vs
degrees Celsius, hPa vs Pa, precipitation rate vs depth, shortwave energy
vs photon flux). Every conversion used here is linear, so it can be
expressed as ``canonical = native * factor + offset`` and applied before harmonization.

References:
- CODATA 2018 internationally recommended values
- Meek et al. (1984) for the shortwave to PPFD flux-to-energy ratio
"""

from dataclasses import dataclass
from typing import Union

import numpy as np


class PhysicalConstants:
    """
    Collection of physical constants used in unit conversions.

    All values follow CODATA 2018 recommendations unless otherwise specified.
    """

    STANDARD_TEMPERATURE = 273.15  # K (0°C)
    SECONDS_PER_DAY = 86400.0

    # Flux-to-energy conversion for photosynthetically active radiation
    PPFD_PER_SHORTWAVE = 2.04e-6  # mol J⁻¹ (shortwave W m⁻² to PPFD mol m⁻² s⁻¹)


# Canonical units of every standardized variable
CANONICAL_UNITS = {
    'temp': 'degC',
    'tmin': 'degC',
    'tmax': 'degC',
    'prec': 'mm',
    'snow': 'mm',
    'vpd': 'Pa',
    'patm': 'Pa',
    'netrad': 'W m-2',
    'swin': 'W m-2',
    'lwin': 'W m-2',
    'ppfd': 'mol m-2 s-1',
    'gpp': 'g C m-2 d-1',
    'le': 'W m-2',
    'co2': 'ppm',
    'fapar': '1',
    'ndvi': '1',
    'evi': '1',
    'lai': 'm2 m-2',
    'ccov': '%',
    'elv': 'm',
    'wet': 'days',
}


@dataclass(frozen=True)
class UnitConversion:
    """
    Linear conversion from a source's native units to canonical units.

    Attributes:
        native_units: Units as reported by the source
        canonical_units: Units after conversion
        factor: Multiplicative factor
        offset: Additive offset applied after scaling
    """
    native_units: str
    canonical_units: str
    factor: float = 1.0
    offset: float = 0.0

    @property
    def is_identity(self) -> bool:
        return self.factor == 1.0 and self.offset == 0.0

    def apply(self, values: Union[float, np.ndarray]) -> np.ndarray:
        """Convert native values to canonical units; NaN stays NaN."""
        values = np.asarray(values, dtype=float)
        if self.is_identity:
            return values.copy()
        return values * self.factor + self.offset


def identity(units: str) -> UnitConversion:
    return UnitConversion(native_units=units, canonical_units=units)


def kelvin_to_celsius() -> UnitConversion:
    return UnitConversion('K', 'degC', 1.0, -PhysicalConstants.STANDARD_TEMPERATURE)


def hpa_to_pa() -> UnitConversion:
    return UnitConversion('hPa', 'Pa', 100.0)


def kpa_to_pa() -> UnitConversion:
    return UnitConversion('kPa', 'Pa', 1000.0)


def precipitation_rate_to_daily_depth() -> UnitConversion:
    """
    Convert precipitation flux (kg m⁻² s⁻¹) to daily depth (mm d⁻¹).

    1 kg m⁻² of water is 1 mm depth; a day has 86400 s.
    """
    return UnitConversion('kg m-2 s-1', 'mm', PhysicalConstants.SECONDS_PER_DAY)


def shortwave_to_ppfd() -> UnitConversion:
    """Convert incoming shortwave (W m⁻²) to PPFD (mol m⁻² s⁻¹)."""
    return UnitConversion('W m-2', 'mol m-2 s-1', PhysicalConstants.PPFD_PER_SHORTWAVE)
