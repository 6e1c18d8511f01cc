"""
Level clustering with Partitioning Around Medoids.

Levels in an energy window are clustered on a pairwise distance built from
tags, spin, parity, energy and dataset membership. The number of groups is
chosen automatically from the mean silhouette coefficient and the
within/between distance ratio.

Features:
- Pairwise level distance and distance matrices
- PAM (k-medoids) with a single-swap fixed point
- Silhouette coefficient and log variation ratio
- Automatic group-count selection

References:
- L. Kaufman, P. J. Rousseeuw, "Finding Groups in Data" (1990)
- P. J. Rousseeuw, J. Comput. Appl. Math. 20 (1987) 53

Author: LevelForge Development Team
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from levelforge.core.errors import ConvergenceWarning
from levelforge.core.model import Level

logger = logging.getLogger(__name__)

# Discrete mismatch penalty
MISMATCH_PENALTY = 1000.0

SILHOUETTE_PERFECT = 0.9999
SILHOUETTE_CONFIDENT = 0.95
VARIATION_KNEE = -3.0


def level_distance(a: Level, b: Level) -> float:
    """
    Distance between two levels.

    Parameters
    ----------
    a, b : Level
        Levels to compare.

    Returns
    -------
    float
        Zero for the same level. When both levels carry a tag, 0 for equal
        tags and ``MISMATCH_PENALTY`` otherwise. Else the sum of the parity
        and spin mismatch penalties (ignored when either side is unknown),
        the energy difference in units of the combined uncertainty, a
        qualifier mismatch penalty and a same-dataset penalty.
    """
    if a is b or (a.handle >= 0 and a.handle == b.handle and a.dataset == b.dataset):
        return 0.0
    if a.tag and b.tag:
        return 0.0 if a.tag == b.tag else MISMATCH_PENALTY

    distance = 0.0
    if a.parity and b.parity and a.parity != b.parity:
        distance += MISMATCH_PENALTY
    if a.spin and b.spin and a.spin != b.spin:
        distance += MISMATCH_PENALTY

    denominator = 1.0
    if a.energy_uncertainty is not None and b.energy_uncertainty is not None:
        combined = math.sqrt(a.energy_uncertainty ** 2 + b.energy_uncertainty ** 2)
        if combined > 0.0:
            denominator = combined
    distance += abs(a.energy.diff(b.energy)) / denominator

    if a.energy.qualifier != b.energy.qualifier:
        distance += MISMATCH_PENALTY
    same_dataset = a.dataset == b.dataset
    distance += MISMATCH_PENALTY - (0.0 if same_dataset else MISMATCH_PENALTY)
    return distance


def distance_matrix(levels: Sequence[Level]) -> np.ndarray:
    n = len(levels)
    D = np.zeros((n, n))
    for i in range(n):
        for j in range(i + 1, n):
            D[i, j] = D[j, i] = level_distance(levels[i], levels[j])
    return D


def clustering_cost(D: np.ndarray, medoids: Sequence[int]) -> float:
    """Sum over items of the distance to the nearest medoid."""
    return float(D[:, list(medoids)].min(axis=1).sum())


def pam(D: np.ndarray, k: int, max_iterations: int = 1000) -> List[int]:
    """
    Partitioning Around Medoids.

    Starts from evenly spaced items and, for every non-medoid, tries swapping
    it with each medoid in turn; the first swap lowering the total cost is
    kept. Sweeps repeat until no swap helps.

    Parameters
    ----------
    D : np.ndarray
        Symmetric distance matrix, shape (n, n).
    k : int
        Number of medoids, 1 <= k <= n.
    max_iterations : int
        Ceiling on sweeps.

    Returns
    -------
    list of int
        Medoid indices.
    """
    n = D.shape[0]
    if not 1 <= k <= n:
        raise ValueError(f"k must be in [1, {n}], got {k}")
    step = n // k
    medoids = [i * step for i in range(k)]
    current = clustering_cost(D, medoids)

    for _ in range(max_iterations):
        swapped = False
        for h in range(n):
            if h in medoids:
                continue
            for i in range(k):
                trial = list(medoids)
                trial[i] = h
                cost = clustering_cost(D, trial)
                if cost - current < 0.0:
                    medoids, current = trial, cost
                    swapped = True
                    break
        if not swapped:
            return medoids

    warnings.warn(
        f"PAM did not reach a fixed point in {max_iterations} sweeps (k={k})",
        ConvergenceWarning,
        stacklevel=2,
    )
    return medoids


def make_groups(D: np.ndarray, medoids: Sequence[int]) -> List[List[int]]:
    """Assign each item to its nearest medoid (first medoid on ties)."""
    groups = [[m] for m in medoids]
    medoid_set = set(medoids)
    for j in range(D.shape[0]):
        if j in medoid_set:
            continue
        nearest = int(np.argmin(D[j, list(medoids)]))
        groups[nearest].append(j)
    return groups


def silhouette(D: np.ndarray, groups: Sequence[Sequence[int]]) -> float:
    """
    Mean silhouette coefficient of a partition.

    The mean distance to the item's own group includes the item itself.
    A single group scores 0.
    """
    if len(groups) < 2:
        return 0.0
    scores = []
    for own, group in enumerate(groups):
        for y in group:
            means = [D[y, list(g)].sum() / len(g) for g in groups]
            a = means[own]
            b = min(m for i, m in enumerate(means) if i != own)
            largest = max(a, b)
            scores.append(0.0 if largest == 0.0 else (b - a) / largest)
    return float(np.mean(scores)) if scores else 0.0


def variation_ratio(D: np.ndarray, groups: Sequence[Sequence[int]]) -> float:
    """Log of (within-group total distance / between-group total distance)."""
    inner = 0.0
    outer = 0.0
    for i, g in enumerate(groups):
        inner += 0.5 * D[np.ix_(g, g)].sum()
        for j, g2 in enumerate(groups):
            if i != j:
                outer += 0.5 * D[np.ix_(g, g2)].sum()
    with np.errstate(divide="ignore", invalid="ignore"):
        return float(np.log(np.float64(inner) / np.float64(outer)))


@dataclass
class ClusteringResult:
    """
    Partition chosen by :func:`cluster`.

    Attributes:
        groups: Item indices per group
        k: Selected group count
        medoids: Medoid index per group (empty for the degenerate case)
        silhouettes: Mean silhouette per tried k
        variation_ratios: Log variation ratio per tried k
        used_variation_knee: k came from the variation-ratio knee
    """

    groups: List[List[int]]
    k: int
    medoids: List[int] = field(default_factory=list)
    silhouettes: Dict[int, float] = field(default_factory=dict)
    variation_ratios: Dict[int, float] = field(default_factory=dict)
    used_variation_knee: bool = False


def choose_group_count(D: np.ndarray, k_min: int, max_iterations: int = 1000) -> ClusteringResult:
    """Scan k upward from ``k_min`` and pick the best-separated partition."""
    n = D.shape[0]
    silhouettes: Dict[int, float] = {}
    variations: Dict[int, float] = {}
    variation_steps: List[float] = []
    use_variation = False

    for k in range(k_min, n + 1):
        groups = make_groups(D, pam(D, k, max_iterations))
        silhouettes[k] = silhouette(D, groups)
        variations[k] = variation_ratio(D, groups)
        if silhouettes[k] > SILHOUETTE_PERFECT:
            break
        if k > k_min:
            with np.errstate(invalid="ignore"):
                step = variations[k] - variations[k - 1]
            variation_steps.append(step)
            if silhouettes[k - 1] > SILHOUETTE_CONFIDENT and silhouettes[k] < silhouettes[k - 1]:
                break
            if step < VARIATION_KNEE:
                use_variation = True
                break

    if use_variation:
        best_k = int(np.nanargmin(variation_steps)) + k_min + 1
    else:
        tried = np.array([silhouettes[k] for k in sorted(silhouettes)], dtype=float)
        best_k = k_min if np.all(np.isnan(tried)) else int(np.nanargmax(tried)) + k_min

    medoids = pam(D, best_k, max_iterations)
    return ClusteringResult(
        groups=make_groups(D, medoids),
        k=best_k,
        medoids=medoids,
        silhouettes=silhouettes,
        variation_ratios=variations,
        used_variation_knee=use_variation,
    )


def cluster(
    levels: Sequence[Level],
    k_min: int,
    max_iterations: int = 1000,
    D: Optional[np.ndarray] = None,
) -> ClusteringResult:
    """
    Cluster levels with automatic group-count selection.

    Parameters
    ----------
    levels : sequence of Level
        Items to cluster.
    k_min : int
        Smallest admissible number of groups.
    max_iterations : int
        PAM sweep ceiling.
    D : np.ndarray, optional
        Precomputed distance matrix for ``levels``.

    Returns
    -------
    ClusteringResult
        Groups of indices into ``levels``. With ``len(levels) <= k_min``
        every level is its own group.
    """
    n = len(levels)
    if n <= k_min:
        return ClusteringResult(groups=[[i] for i in range(n)], k=n)
    if D is None:
        D = distance_matrix(levels)
    result = choose_group_count(D, k_min, max_iterations)
    logger.debug(f"Clustered {n} levels into {result.k} groups (k_min={k_min})")
    return result
