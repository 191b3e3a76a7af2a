"""
Mean-Preserving Interpolation and Aggregation for Site Ingestion

This module provides the numerical kernels the Harmonizer uses to move a
series between nested period grids: a piecewise quadratic interpolation that
reproduces each coarse-period mean exactly, and a gap-aware aggregation with
mean, sum and first reducers.

Scientific Context:
Coarse climate products report period means (temperature, radiation, vapour
pressure deficit) or period totals. Repeating the coarse value at every fine
period produces step changes at period boundaries; linear interpolation
through period centres smooths them but no longer reproduces the coarse
means. The quadratic used here is continuous at period boundaries (where the
neighbouring means are averaged) while its discrete mean over the fine
periods equals the coarse value, so re-aggregating the interpolated series
returns the input.

Interpolation scheme for one coarse period with value d spread over n fine
periods, fine midpoints at t_k = (k + 0.5) / n on [0, 1]:

    f(t) = a t^2 + b t + c,  f(0) = L,  f(1) = R,  mean_k f(t_k) = d

    m2 = mean_k t_k^2 = 1/3 - 1/(12 n^2)
    a  = (d - (L + R) / 2) / (m2 - 1/2)
    b  = R - L - a
    c  = L

Boundary rule:
    L = (d_prev + d) / 2 and R = (d + d_next) / 2 when the neighbours exist.
    A missing or out-of-range neighbour is replaced by the ghost value
    2 d - d_other, extrapolating the linear trend through the period and its
    remaining neighbour. With no usable neighbour on either side the period
    is flat (L = R = d).

When the fine periods differ in length (the months of a year) the
fine-period durations act as weights: the midpoints t_k sit at the centres
of the weighted sub-intervals and the duration-weighted mean is preserved.
"""

import logging
from typing import Optional, Sequence

import numpy as np

logger = logging.getLogger(__name__)

REDUCERS = ('mean', 'sum', 'first')


def _edge_values(coarse: np.ndarray, i: int):
    """Left and right edge values of coarse period i."""
    d = coarse[i]
    prev = coarse[i - 1] if i > 0 else np.nan
    nxt = coarse[i + 1] if i < len(coarse) - 1 else np.nan
    has_prev, has_next = np.isfinite(prev), np.isfinite(nxt)

    if has_prev and has_next:
        return (prev + d) / 2.0, (d + nxt) / 2.0
    if has_prev:
        ghost = 2.0 * d - prev
        return (prev + d) / 2.0, (d + ghost) / 2.0
    if has_next:
        ghost = 2.0 * d - nxt
        return (d + ghost) / 2.0, (d + nxt) / 2.0
    return d, d


def quadratic_period(d: float, left: float, right: float, n_fine: int,
                     weights: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Fine-period values of one coarse period.

    Args:
        d: Coarse-period mean
        left: Value at the start of the period
        right: Value at the end of the period
        n_fine: Number of fine periods
        weights: Optional fine-period durations; the duration-weighted mean
            is preserved instead of the plain mean

    Returns:
        np.ndarray: n_fine values whose (weighted) mean is d
    """
    if n_fine == 1:
        return np.array([d])

    if weights is None:
        t = (np.arange(n_fine) + 0.5) / n_fine
        m1 = 0.5
        m2 = 1.0 / 3.0 - 1.0 / (12.0 * n_fine ** 2)
        w = np.ones(n_fine)
    else:
        w = np.asarray(weights, dtype=float)
        edges = np.concatenate(([0.0], np.cumsum(w))) / w.sum()
        t = (edges[:-1] + edges[1:]) / 2.0
        m1 = np.average(t, weights=w)
        m2 = np.average(t ** 2, weights=w)

    a = (d - left - (right - left) * m1) / (m2 - m1)
    b = right - left - a
    values = a * t ** 2 + b * t + left
    # Remove floating point residue of the closed form
    return values + (d - np.average(values, weights=w))


def _enforce_lower_bound(values: np.ndarray, d: float, lower_bound: float,
                         weights: np.ndarray) -> np.ndarray:
    """Clip values below the bound and rescale the excess so the mean stays d."""
    if not np.any(values < lower_bound):
        return values
    if d <= lower_bound:
        return np.full_like(values, d)

    clipped = np.maximum(values, lower_bound)
    excess = clipped - lower_bound
    return lower_bound + excess * ((d - lower_bound) / np.average(excess, weights=weights))


def mean_preserving_interpolation(coarse_values: Sequence[float], counts: Sequence[int],
                                  mode: str = 'mean',
                                  lower_bound: Optional[float] = None,
                                  durations: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Disaggregate coarse-period values onto nested fine periods.

    Args:
        coarse_values: One value per coarse period, NaN for missing
        counts: Number of fine periods in each coarse period (e.g. days per month)
        mode: 'mean' keeps each coarse mean, 'sum' keeps each coarse total
            (the per-unit-duration share is interpolated)
        lower_bound: Physical lower bound (e.g. 0 for radiation); undershoots
            are clipped with the period rescaled to keep its mean
        durations: Optional duration of every fine period, length sum(counts).
            Needed when fine periods differ in length (months of a year) so
            that means are duration-weighted. Defaults to equal durations.

    Returns:
        np.ndarray: Concatenated fine values, length sum(counts). Every fine
            value of a missing coarse period is NaN.

    Example:
        >>> monthly_temp = np.array([2.0, 5.0, 9.0])
        >>> daily = mean_preserving_interpolation(monthly_temp, [31, 28, 31])
        >>> round(daily[31:59].mean(), 12)
        5.0
    """
    coarse = np.asarray(coarse_values, dtype=float)
    counts = np.asarray(counts, dtype=int)
    if coarse.shape != counts.shape:
        raise ValueError(f"{coarse.size} coarse values but {counts.size} period counts")
    if mode not in ('mean', 'sum'):
        raise ValueError(f"Unknown interpolation mode: {mode}")
    if np.any(counts < 1):
        raise ValueError("Every coarse period needs at least one fine period")

    if durations is None:
        fine_durations = np.ones(int(counts.sum()))
    else:
        fine_durations = np.asarray(durations, dtype=float)
        if fine_durations.size != counts.sum() or np.any(fine_durations <= 0):
            raise ValueError("durations must hold one positive value per fine period")
    edges = np.concatenate(([0], np.cumsum(counts)))
    period_durations = np.add.reduceat(fine_durations, edges[:-1]) if counts.size else np.array([])

    # Interpolate per-unit-duration shares so periods of unequal length compare
    shares = coarse / period_durations if mode == 'sum' else coarse
    bound = None if lower_bound is None else float(lower_bound)

    pieces = []
    for i, n in enumerate(counts):
        d = shares[i]
        if not np.isfinite(d):
            pieces.append(np.full(n, np.nan))
            continue
        weights = fine_durations[edges[i]:edges[i + 1]]
        left, right = _edge_values(shares, i)
        values = quadratic_period(d, left, right, n, None if durations is None else weights)
        if bound is not None:
            values = _enforce_lower_bound(values, d, bound, weights)
        if mode == 'sum' and durations is not None:
            values = values * weights
        pieces.append(values)

    if not pieces:
        return np.array([], dtype=float)
    return np.concatenate(pieces)


def aggregate(values: Sequence[float], group_index: Sequence[int], expected_counts: Sequence[int],
              reducer: str = 'mean', max_missing_fraction: float = 0.2,
              durations: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Reduce fine-period values onto coarse periods with gap propagation.

    Args:
        values: Fine-period values, NaN for missing
        group_index: Coarse period index of each fine value (negative or
            out-of-range indices are ignored)
        expected_counts: Number of fine periods each coarse period should hold
        reducer: 'mean', 'sum' or 'first'
        max_missing_fraction: Largest tolerated fraction of missing fine
            values; above it the coarse value is missing
        durations: Optional duration of every fine value; means become
            duration-weighted

    Returns:
        np.ndarray: One value per coarse period

    Notes:
        Sums over periods with tolerated gaps are scaled by expected/valid
        counts, i.e. missing fine periods are assumed to hold the mean of the
        valid ones.
    """
    if reducer not in REDUCERS:
        raise ValueError(f"Unknown reducer: {reducer}. Available: {REDUCERS}")

    values = np.asarray(values, dtype=float)
    group_index = np.asarray(group_index, dtype=int)
    expected = np.asarray(expected_counts, dtype=float)
    weights = np.ones(values.size) if durations is None else np.asarray(durations, dtype=float)
    n_groups = expected.size

    in_range = (group_index >= 0) & (group_index < n_groups)
    valid = in_range & np.isfinite(values)
    groups = group_index[valid]

    n_valid = np.bincount(groups, minlength=n_groups).astype(float)
    with np.errstate(divide='ignore', invalid='ignore'):
        missing_fraction = np.where(expected > 0, 1.0 - n_valid / expected, 1.0)
    usable = (n_valid > 0) & (missing_fraction <= max_missing_fraction + 1e-12)

    result = np.full(n_groups, np.nan)
    if reducer == 'first':
        # Fine values arrive in time order, so the first valid index per group wins
        first_positions = {}
        for position, group in zip(np.flatnonzero(valid), groups):
            first_positions.setdefault(group, position)
        for group, position in first_positions.items():
            if usable[group]:
                result[group] = values[position]
        return result

    sums = np.bincount(groups, weights=values[valid], minlength=n_groups)
    weight_valid = np.bincount(groups, weights=weights[valid], minlength=n_groups)
    weighted_sums = np.bincount(groups, weights=values[valid] * weights[valid], minlength=n_groups)
    means = np.divide(weighted_sums, weight_valid, out=np.zeros(n_groups), where=weight_valid > 0)
    if reducer == 'mean':
        result[usable] = means[usable]
    else:
        complete = usable & (n_valid == expected)
        result[complete] = sums[complete]
        gapped = usable & ~complete
        plain_means = np.divide(sums, n_valid, out=np.zeros(n_groups), where=n_valid > 0)
        result[gapped] = plain_means[gapped] * expected[gapped]

    n_dropped = int(np.count_nonzero((n_valid > 0) & ~usable))
    if n_dropped:
        logger.debug(f"{n_dropped} aggregated periods exceed the missing-data threshold")
    return result
