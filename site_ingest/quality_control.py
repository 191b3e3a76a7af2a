"""
Quality Control for Flux Site Records

This module provides the quality filter applied to flux estimates from
sources that expose corroborating quality information, and the report that
records what each rule removed.

Scientific Context:
Daily eddy-covariance fluxes are aggregated from half-hourly records, part
of which are gap-filled. Two independent pieces of evidence indicate a
low-confidence day:

1. Completeness: the fraction of measured (not gap-filled) half-hours
   behind the daily value is below a threshold.
2. Cross-estimate consistency: GPP is derived from NEE by two partitioning
   methods (night-time respiration model and day-time light response).
   Where both are reliable they agree; days whose difference falls outside
   the central 95% of the site's difference distribution (2.5th to 97.5th
   percentile over the full record) are treated as outliers.
3. Sign: GPP cannot be negative; negative values are partitioning artefacts.

Each rule produces an independent keep-mask computed on the unfiltered
record. Masks are combined with AND (a sample survives only if every enabled
rule keeps it) or OR (a sample survives if any enabled rule keeps it). Since
the masks do not depend on each other, the order of the rules does not
change the surviving set. Dropped samples become missing values; nothing is
removed from the time axis.

References:
- Pastorello et al. (2020) The FLUXNET2015 dataset and the ONEFlux
  processing pipeline for eddy covariance data. Scientific Data 7, 225
- Stocker et al. (2020) P-model v1.0: an optimality-based light use
  efficiency model for simulating ecosystem gross primary production.
  Geoscientific Model Development 13(3)
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from .logging_utils import InsufficientDataError


class FilterReport:
    """
    Container for quality filter results.

    Records how many samples each rule would drop on its own, the rules that
    were skipped and why, and the size of the surviving record.
    """

    def __init__(self, variable: Optional[str] = None):
        self.variable = variable
        self.total_samples: int = 0
        self.valid_before: int = 0
        self.valid_after: int = 0
        self.dropped: Dict[str, int] = {}
        self.skipped: Dict[str, str] = {}
        self.band: Optional[Tuple[float, float]] = None
        self.warnings: List[str] = []

    def add_rule_result(self, rule: str, n_dropped: int):
        """Add the number of samples a rule drops."""
        self.dropped[rule] = int(n_dropped)

    def add_skipped(self, rule: str, reason: str):
        """Record a rule that could not be applied."""
        self.skipped[rule] = reason
        self.warnings.append(f"{rule} rule skipped: {reason}")

    @property
    def n_dropped(self) -> int:
        return self.valid_before - self.valid_after

    def summary(self) -> str:
        """Generate summary report of quality filter results."""
        summary = f"Quality Filter Summary ({self.variable or 'unnamed'}):\n"
        summary += f"  Samples: {self.total_samples}\n"
        summary += f"  Valid before filtering: {self.valid_before}\n"
        summary += f"  Valid after filtering: {self.valid_after}\n"

        for rule, count in self.dropped.items():
            summary += f"  {rule}: {count} dropped\n"

        if self.band is not None:
            summary += f"  Cross-estimate band: [{self.band[0]:.4g}, {self.band[1]:.4g}]\n"

        if self.warnings:
            summary += "\nWarnings:\n"
            for warning in self.warnings:
                summary += f"  - {warning}\n"

        return summary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'variable': self.variable,
            'total_samples': self.total_samples,
            'valid_before': self.valid_before,
            'valid_after': self.valid_after,
            'dropped': dict(self.dropped),
            'skipped': dict(self.skipped),
            'band': self.band,
        }


class QualityFilter:
    """
    Completeness, cross-estimate and sign filtering of flux samples.

    Attributes:
        threshold: Minimum quality (non-gap-filled fraction); 0 disables
        filter_cross_estimate: Enable the cross-estimate consistency rule
        remove_negative: Enable the sign rule
        min_samples: Paired finite samples needed to estimate the band
        percentiles: Lower and upper percentile of the difference band
        combine: 'and' or 'or'
    """

    def __init__(self, threshold: float = 0.0, filter_cross_estimate: bool = False,
                 remove_negative: bool = False, min_samples: int = 30,
                 percentiles: Tuple[float, float] = (2.5, 97.5), combine: str = 'and'):
        if combine not in ('and', 'or'):
            raise ValueError(f"combine must be 'and' or 'or', got {combine!r}")
        self.threshold = threshold
        self.filter_cross_estimate = filter_cross_estimate
        self.remove_negative = remove_negative
        self.min_samples = min_samples
        self.percentiles = percentiles
        self.combine = combine
        self.logger = logging.getLogger(self.__class__.__name__)

    @classmethod
    def from_settings(cls, settings) -> 'QualityFilter':
        return cls(
            threshold=settings.threshold_gpp,
            filter_cross_estimate=settings.filter_cross_estimate,
            remove_negative=settings.remove_negative,
            min_samples=settings.min_samples_cross_estimate,
            combine=settings.combine_rules,
        )

    @property
    def enabled(self) -> bool:
        return self.threshold > 0 or self.filter_cross_estimate or self.remove_negative

    def completeness_mask(self, quality: np.ndarray) -> np.ndarray:
        """Keep samples whose quality reaches the threshold; unknown quality is kept."""
        quality = np.asarray(quality, dtype=float)
        return ~(np.isfinite(quality) & (quality < self.threshold))

    def cross_estimate_mask(self, values: np.ndarray,
                            companion: np.ndarray) -> Tuple[np.ndarray, Tuple[float, float]]:
        """
        Keep samples whose difference to the companion estimate is inside the band.

        Args:
            values: Primary estimate
            companion: Parallel estimate of the same quantity

        Returns:
            tuple: (keep mask, (lower, upper) band)

        Raises:
            InsufficientDataError: If fewer than min_samples pairs are finite
        """
        difference = np.asarray(values, dtype=float) - np.asarray(companion, dtype=float)
        paired = np.isfinite(difference)
        n_pairs = int(paired.sum())
        if n_pairs < self.min_samples:
            raise InsufficientDataError(
                f"Cross-estimate band needs {self.min_samples} paired samples, found {n_pairs}",
                {'n_pairs': n_pairs, 'min_samples': self.min_samples}
            )

        lower, upper = np.percentile(difference[paired], self.percentiles)
        keep = ~paired | ((difference >= lower) & (difference <= upper))
        return keep, (float(lower), float(upper))

    @staticmethod
    def sign_mask(values: np.ndarray) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        return ~(np.isfinite(values) & (values < 0))

    def apply(self, values, quality=None, companion=None,
              variable: Optional[str] = None) -> Tuple[np.ndarray, FilterReport]:
        """
        Filter a record, marking dropped samples as missing.

        Args:
            values: Flux values, NaN for missing
            quality: Optional per-sample quality values (NaN when unknown)
            companion: Optional parallel estimate aligned with values
            variable: Variable name for the report

        Returns:
            tuple: (filtered copy of values, FilterReport)
        """
        values = np.array(values, dtype=float)
        finite = np.isfinite(values)
        report = FilterReport(variable)
        report.total_samples = values.size
        report.valid_before = int(finite.sum())

        masks = []
        if self.threshold > 0:
            if quality is None:
                report.add_skipped('completeness', 'no quality values available')
            else:
                masks.append(('completeness', self.completeness_mask(quality)))

        if self.filter_cross_estimate:
            if companion is None:
                report.add_skipped('cross_estimate', 'no companion estimate available')
            else:
                try:
                    keep, report.band = self.cross_estimate_mask(values, companion)
                    masks.append(('cross_estimate', keep))
                except InsufficientDataError as e:
                    report.add_skipped('cross_estimate', str(e))

        if self.remove_negative:
            masks.append(('sign', self.sign_mask(values)))

        for rule in report.skipped:
            self.logger.warning(f"{variable or 'record'}: {rule} rule skipped ({report.skipped[rule]})")

        if masks:
            for rule, keep in masks:
                report.add_rule_result(rule, np.count_nonzero(finite & ~keep))
            stacked = np.vstack([keep for _, keep in masks])
            combined = stacked.all(axis=0) if self.combine == 'and' else stacked.any(axis=0)
            values[~combined] = np.nan

        report.valid_after = int(np.isfinite(values).sum())
        self.logger.debug(f"{variable or 'record'}: kept {report.valid_after}/{report.valid_before} samples")
        return values, report
