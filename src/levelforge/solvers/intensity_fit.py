"""
Per-level intensity scale reconciliation.

For one level, datasets report the branching intensities of its outgoing
transitions on their own scales. We look for one scale factor per dataset
(beta_j) and one latent intensity per transition (Ibar_i) minimising

    chi2 = sum_ij w_ij (I_ij - beta_j Ibar_i)^2

over the measured cells, with the first dataset that measures anything as
the reference (beta = 1). Two iterations are available:

- normalized: alternate Ibar and beta updates, renormalizing Ibar to unit sum
- unnormalized: golden-section search of each non-reference beta on the total
  chi2, with Ibar re-derived for every trial value

Cells more than ``intensity_outlier_sigma`` away from ``beta_j Ibar_i`` are
offered to the reviewer one at a time.

Author: LevelForge Development Team
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np

from levelforge.core.config import ReconcilerConfig
from levelforge.core.errors import ConvergenceWarning
from levelforge.core.model import LevelScheme, Transition, is_synthetic_source
from levelforge.matching.equivalence import TransitionEquivalenceClass, group_transitions
from levelforge.review import DecliningReviewer, ReviewContext, Reviewer

logger = logging.getLogger(__name__)

INVALID = -1.0
NORMALIZED_TOLERANCE = 1e-9
UNNORMALIZED_TOLERANCE = 1e-4
GOLDEN_TOLERANCE = 1e-5
GOLDEN_HALF_WIDTH = 0.9
GOLDEN_FLOOR = 1e-5


@dataclass
class IntensityMatrix:
    """
    Intensities of one level's transitions as reported by each dataset.

    Attributes:
        intensities: (transitions, datasets) renormalized values, -1 if absent
        weights: Matching weights, 1 for absent cells
        sources: Dataset per column
        classes: Transition class per row
        cells: Transition handle per measured (row, column)
        scales: Factor taking a renormalized cell back to its dataset's scale
    """

    intensities: np.ndarray
    weights: np.ndarray
    sources: List[str]
    classes: List[TransitionEquivalenceClass]
    cells: Dict[Tuple[int, int], int] = field(default_factory=dict)
    scales: Dict[Tuple[int, int], float] = field(default_factory=dict)

    @property
    def valid(self) -> np.ndarray:
        return self.intensities > 0.0

    @property
    def reference(self) -> int:
        """First column with a measured cell."""
        columns = np.flatnonzero(self.valid.any(axis=0))
        return int(columns[0]) if columns.size else 0


def build_intensity_matrix(
    scheme: LevelScheme,
    level: int,
    config: Optional[ReconcilerConfig] = None,
) -> IntensityMatrix:
    """
    Collect the outgoing intensities of ``level`` per transition class and dataset.

    Missing intensity uncertainties default to ``nonnumeric_intensity_fraction``
    of the value. Each dataset's transitions are then put on the adopted scale
    (strongest = 100); a dataset with a single transition from this level
    carries no branching information and is left unmeasured.
    """
    config = config or ReconcilerConfig()
    outgoing = [t for t in scheme.outgoing(level) if not is_synthetic_source(t.dataset)]
    classes = [
        cls for cls in group_transitions(scheme, [t.handle for t in outgoing]) if cls.contributing()
    ]
    sources = sorted({t.dataset for t in outgoing})

    normalized: Dict[int, Tuple[float, float, float]] = {}
    for source in sources:
        group = [t for t in outgoing if t.dataset == source]
        if len(group) < 2:
            continue
        largest = max((t.intensity or 0.0) for t in group)
        if largest < 1e-20:
            continue
        for t in group:
            if t.intensity is None:
                continue
            sigma = t.intensity_uncertainty
            if sigma is None:
                sigma = config.nonnumeric_intensity_fraction * t.intensity
            scale = largest / 100.0
            normalized[t.handle] = (t.intensity / scale, sigma / scale, scale)

    I = np.full((len(classes), len(sources)), INVALID)
    W = np.ones((len(classes), len(sources)))
    matrix = IntensityMatrix(I, W, sources, classes)
    for i, cls in enumerate(classes):
        for t in cls.contributing():
            j = sources.index(t.dataset)
            if t.handle not in normalized:
                continue
            value, sigma, scale = normalized[t.handle]
            if value <= 0.0 or sigma <= 0.0:
                continue
            I[i, j] = value
            W[i, j] = 1.0 / (sigma * sigma)
            matrix.cells[(i, j)] = t.handle
            matrix.scales[(i, j)] = scale
    return matrix


def calc_ibar(
    I: np.ndarray,
    W: np.ndarray,
    beta: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Latent intensities for given scale factors.

    Returns
    -------
    ibar, dibar : np.ndarray
        ``sum w I beta / sum w beta^2`` and ``1/sqrt(sum w beta^2)`` per row,
        -1 where the row has no usable cell.
    """
    use = (I > 0.0) & (beta[np.newaxis, :] > 0.0)
    num = np.where(use, W * I * beta, 0.0).sum(axis=1)
    den = np.where(use, W * beta * beta, 0.0).sum(axis=1)
    ibar = np.full(I.shape[0], INVALID)
    dibar = np.full(I.shape[0], INVALID)
    ok = num > 0.0
    ibar[ok] = num[ok] / den[ok]
    dibar[ok] = 1.0 / np.sqrt(den[ok])
    return ibar, dibar


def calc_beta(I: np.ndarray, W: np.ndarray, ibar: np.ndarray) -> np.ndarray:
    """Weighted regression of each column on ``ibar``; -1 for unusable columns."""
    use = (I > 0.0) & (ibar[:, np.newaxis] > 0.0)
    num = np.where(use, W * I * ibar[:, np.newaxis], 0.0).sum(axis=0)
    den = np.where(use, W * (ibar * ibar)[:, np.newaxis], 0.0).sum(axis=0)
    beta = np.full(I.shape[1], INVALID)
    ok = num > 0.0
    beta[ok] = num[ok] / den[ok]
    return beta


def total_chi2(I: np.ndarray, W: np.ndarray, beta: np.ndarray, ibar: np.ndarray) -> float:
    use = (I > 0.0) & (ibar[:, np.newaxis] > 0.0) & (beta[np.newaxis, :] > 0.0)
    model = ibar[:, np.newaxis] * beta[np.newaxis, :]
    return float(np.where(use, W * (I - model) ** 2, 0.0).sum())


def golden_section_search(
    f: Callable[[float], float],
    a: float,
    b: float,
    tol: float = GOLDEN_TOLERANCE,
) -> float:
    """Minimise a unimodal ``f`` on [a, b]; stops early when both probes tie."""
    gr = (math.sqrt(5.0) - 1.0) / 2.0
    c = b - gr * (b - a)
    d = a + gr * (b - a)
    while abs(b - a) > tol:
        fc, fd = f(c), f(d)
        if fc == fd:
            break
        if fc < fd:
            b = d
        else:
            a = c
        c = b - gr * (b - a)
        d = a + gr * (b - a)
    return (a + b) / 2.0


@dataclass
class ScaleSolution:
    """
    Scale factors and latent intensities of one level.

    Attributes:
        beta: Scale factor per dataset (reference = 1, -1 if unusable)
        ibar: Latent intensity per transition class (-1 if unusable)
        dibar: Uncertainty of ``ibar``
        chi2: Total weighted chi-squared
        iterations: Updates performed
        converged: Tolerance reached before the iteration ceiling
    """

    beta: np.ndarray
    ibar: np.ndarray
    dibar: np.ndarray
    chi2: float
    iterations: int
    converged: bool


def _relative_change(new: np.ndarray, old: np.ndarray) -> float:
    scale = np.linalg.norm(old)
    return float(np.linalg.norm(new - old) / scale) if scale > 0.0 else float(np.linalg.norm(new - old))


def solve_scales(
    I: np.ndarray,
    W: np.ndarray,
    normalized: bool = True,
    reference: int = 0,
    max_iterations: int = 10000,
) -> ScaleSolution:
    """
    Solve for beta and Ibar on one intensity matrix.

    The result is expressed on the scale of column ``reference``.
    """
    n_sources = I.shape[1]
    beta = np.ones(n_sources)
    converged = False
    iterations = 0

    for iterations in range(1, max_iterations + 1):
        if normalized:
            ibar, _ = calc_ibar(I, W, beta)
            valid = ibar > 0.0
            if valid.any():
                ibar[valid] /= ibar[valid].sum()
            new_beta = calc_beta(I, W, ibar)
            tolerance = NORMALIZED_TOLERANCE
        else:
            new_beta = beta.copy()
            for j in range(n_sources):
                if j == reference or not (I[:, j] > 0.0).any():
                    continue

                def chi2_at(value: float, j: int = j) -> float:
                    trial = new_beta.copy()
                    trial[j] = value
                    return total_chi2(I, W, trial, calc_ibar(I, W, trial)[0])

                low = max(new_beta[j] - GOLDEN_HALF_WIDTH, GOLDEN_FLOOR)
                new_beta[j] = golden_section_search(chi2_at, low, new_beta[j] + GOLDEN_HALF_WIDTH)
            tolerance = UNNORMALIZED_TOLERANCE
        change = _relative_change(new_beta, beta)
        beta = new_beta
        if change < tolerance:
            converged = True
            break

    if not converged:
        warnings.warn(
            f"Intensity scale iteration stopped after {max_iterations} updates",
            ConvergenceWarning,
            stacklevel=2,
        )

    ibar, dibar = calc_ibar(I, W, beta)
    ref_beta = beta[reference] if 0 <= reference < n_sources else INVALID
    if ref_beta > 0.0:
        usable = beta > 0.0
        beta[usable] /= ref_beta
        valid = ibar > 0.0
        ibar[valid] *= ref_beta
        dibar[valid] *= ref_beta
    return ScaleSolution(beta, ibar, dibar, total_chi2(I, W, beta, ibar), iterations, converged)


@dataclass
class LevelIntensityFit:
    """
    Intensity fit of one level.

    Attributes:
        level: Level handle
        matrix: Intensity matrix after any accepted uncertainty changes
        solution: Final scale solution
        n_reviews: Reviewer calls made by the outlier pass
        diagnostics: Non-fatal problems found
    """

    level: int
    matrix: IntensityMatrix
    solution: ScaleSolution
    n_reviews: int = 0
    diagnostics: List[str] = field(default_factory=list)

    @property
    def sources(self) -> List[str]:
        return self.matrix.sources

    def intensities(self) -> Dict[Tuple[int, Optional[int]], Tuple[float, float]]:
        """Latent (value, uncertainty) per (parent, final), measured rows only."""
        out = {}
        for i, cls in enumerate(self.matrix.classes):
            if self.solution.ibar[i] > 0.0:
                out[(cls.parent, cls.final)] = (float(self.solution.ibar[i]), float(self.solution.dibar[i]))
        return out


def fit_level_intensities(
    scheme: LevelScheme,
    level: int,
    reviewer: Optional[Reviewer] = None,
    config: Optional[ReconcilerConfig] = None,
) -> LevelIntensityFit:
    """
    Reconcile the intensities of the transitions leaving one level.

    Accepted uncertainty increases are written back to the transitions on
    their dataset's original scale.
    """
    config = config or ReconcilerConfig()
    reviewer = reviewer or DecliningReviewer()
    matrix = build_intensity_matrix(scheme, level, config)
    I, W = matrix.intensities, matrix.weights
    n_reviews = 0
    diagnostics: List[str] = []

    while True:
        solution = solve_scales(
            I, W, config.normalize_intensities, matrix.reference, config.max_intensity_iterations
        )
        if not solution.converged:
            diagnostics.append(f"Intensity scales of level {level} did not converge")
        model = solution.ibar[:, np.newaxis] * solution.beta[np.newaxis, :]
        usable = matrix.valid & (solution.ibar[:, np.newaxis] > 0.0) & (solution.beta[np.newaxis, :] > 0.0)
        if not usable.any():
            break
        deviation = np.where(usable, np.sqrt(W) * np.abs(I - model), 0.0)
        i, j = (int(x) for x in np.unravel_index(int(np.argmax(deviation)), deviation.shape))
        n_sigma = float(deviation[i, j])
        if n_sigma <= config.intensity_outlier_sigma:
            break

        t: Transition = scheme.transitions[matrix.cells[(i, j)]]
        suggested = float(abs(I[i, j] - model[i, j]))
        context = ReviewContext(
            kind="intensity",
            transition=t.handle,
            parent=t.parent,
            measured=float(I[i, j]),
            fitted=float(model[i, j]),
            sigma=1.0 / math.sqrt(W[i, j]),
            n_sigma=n_sigma,
            competing=[(o.dataset, o.intensity, o.intensity_uncertainty) for o in matrix.classes[i].transitions
                       if o.handle != t.handle],
        )
        n_reviews += 1
        decision = reviewer.request_uncertainty_increase(t, context, suggested)
        new_sigma = decision.resolved_sigma(suggested)
        if new_sigma is None:
            break
        W[i, j] = 1.0 / (new_sigma * new_sigma)
        t.set_intensity_uncertainty(new_sigma * matrix.scales[(i, j)])
        if t.normalized_intensity is not None and t.intensity:
            t.normalized_intensity_uncertainty = t.intensity_uncertainty * t.normalized_intensity / t.intensity
        logger.info(
            f"Intensity uncertainty of {t.energy_text} ({t.dataset}) raised to {t.intensity_uncertainty:g}"
        )

    return LevelIntensityFit(level, matrix, solution, n_reviews, diagnostics)


@dataclass
class IntensityFitResult:
    """Intensity fits of all levels with outgoing transitions."""

    levels: Dict[int, LevelIntensityFit] = field(default_factory=dict)
    diagnostics: List[str] = field(default_factory=list)

    @property
    def n_reviews(self) -> int:
        return sum(fit.n_reviews for fit in self.levels.values())

    def intensities(self) -> Dict[Tuple[int, Optional[int]], Tuple[float, float]]:
        out = {}
        for fit in self.levels.values():
            out.update(fit.intensities())
        return out

    def summary(self) -> str:
        lines = ["Intensity scale fit", "=" * 40, f"Levels fitted: {len(self.levels)}"]
        for handle, fit in self.levels.items():
            betas = ", ".join(
                f"{s}={b:.4g}" for s, b in zip(fit.sources, fit.solution.beta) if b > 0.0
            )
            lines.append(f"  level {handle}: chi2 = {fit.solution.chi2:.4g}; beta: {betas}")
        if self.diagnostics:
            lines.append("Diagnostics:")
            lines.extend(f"  - {d}" for d in self.diagnostics)
        return "\n".join(lines)


def fit_intensities(
    scheme: LevelScheme,
    reviewer: Optional[Reviewer] = None,
    config: Optional[ReconcilerConfig] = None,
) -> IntensityFitResult:
    """
    Run :func:`fit_level_intensities` for every level with outgoing transitions.

    Levels are independent. The scale factors and their datasets are stored
    on each level (``beta``, ``intensity_sources``).
    """
    config = config or ReconcilerConfig()
    reviewer = reviewer or DecliningReviewer()
    result = IntensityFitResult()
    for lvl in scheme.levels:
        if not lvl.outgoing:
            continue
        fit = fit_level_intensities(scheme, lvl.handle, reviewer, config)
        if not fit.matrix.classes:
            continue
        lvl.beta = [float(b) for b in fit.solution.beta]
        lvl.intensity_sources = list(fit.sources)
        result.levels[lvl.handle] = fit
        result.diagnostics.extend(fit.diagnostics)
    logger.info(f"Intensity fit: {len(result.levels)} levels, {result.n_reviews} reviewer calls")
    return result
