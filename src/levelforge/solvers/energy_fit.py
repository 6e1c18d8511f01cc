"""
Least-squares level energies from measured transition energies.

Every placed transition with a measured energy contributes a row
``E_gamma = E_parent - E_final`` (recoil corrected, optionally minus a
per-dataset shift). Levels at zero energy are pinned by heavily weighted
extra rows. The weighted normal equations are solved with a truncated-SVD
pseudoinverse so that rank-deficient schemes still produce a fit.

Outliers beyond ``energy_outlier_sigma`` are offered, one at a time, to a
:class:`~levelforge.review.Reviewer`; an accepted uncertainty increase
triggers a new solve.

Author: LevelForge Development Team
"""

from __future__ import annotations

import logging
import math
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from levelforge.core.config import ReconcilerConfig
from levelforge.core.errors import UnderdeterminedSystemWarning
from levelforge.core.linalg import PseudoInverse, weighted_normal_solve
from levelforge.core.model import LevelScheme, Transition
from levelforge.core.numeric import mass_number, recoil_correction
from levelforge.review import DecliningReviewer, ReviewContext, Reviewer

logger = logging.getLogger(__name__)

# Zero-level rows weigh this many times the sum of the measurement weights
ZERO_LEVEL_WEIGHT_FACTOR = 100.0

LevelPair = Tuple[int, Optional[int]]


@dataclass
class PlacementSystem:
    """
    Signed incidence system of a level scheme.

    Attributes:
        design: Coefficient matrix, one row per measurement or zero level
        values: Right-hand side (recoil-corrected energies, 0 for zero rows)
        weights: Row weights
        rows: Transition handle per row, None for zero-level rows
        level_handles: Level handle per level column
        sources: Dataset per shift column (empty without shifts)
    """

    design: np.ndarray
    values: np.ndarray
    weights: np.ndarray
    rows: List[Optional[int]]
    level_handles: List[int]
    sources: List[str] = field(default_factory=list)

    @property
    def n_levels(self) -> int:
        return len(self.level_handles)

    @property
    def n_unknowns(self) -> int:
        return self.design.shape[1]

    @property
    def measurement_rows(self) -> List[int]:
        return [i for i, h in enumerate(self.rows) if h is not None]

    def refresh_zero_weights(self) -> None:
        measured = self.measurement_rows
        pin = ZERO_LEVEL_WEIGHT_FACTOR * float(self.weights[measured].sum()) if measured else 1.0
        for i, h in enumerate(self.rows):
            if h is None:
                self.weights[i] = pin


def _energy_weight(t: Transition, default_uncertainty: float) -> float:
    sigma = t.energy_uncertainty
    if sigma is None or sigma <= 0.0:
        sigma = default_uncertainty
    return 1.0 / (sigma * sigma)


def build_placement_system(
    scheme: LevelScheme,
    config: Optional[ReconcilerConfig] = None,
    fit_shifts: Optional[bool] = None,
) -> PlacementSystem:
    """
    Build the placement system for ``scheme``.

    Only levels touched by non-adopted transitions get a column. Shift
    columns are added only if the system stays at least determined
    (rows >= columns); otherwise they are dropped.
    """
    config = config or ReconcilerConfig()
    fit_shifts = config.fit_shifts if fit_shifts is None else fit_shifts
    levels = scheme.levels_with_transitions()
    column = {lvl.handle: i for i, lvl in enumerate(levels)}
    sources = scheme.sources()

    measured: List[Transition] = []
    for source in sources:
        for t in scheme.transitions:
            if t.dataset != source or t.energy is None or t.energy <= 0.0:
                continue
            if t.parent in column and t.final in column and t.parent != t.final:
                measured.append(t)
    zero_levels = scheme.zero_levels(levels)

    n_rows = len(measured) + len(zero_levels)
    n_cols = len(levels) + len(sources)
    if fit_shifts and n_cols > n_rows:
        logger.info(f"Shift fitting disabled: {n_cols} unknowns for {n_rows} rows")
        fit_shifts = False
    if not fit_shifts:
        n_cols = len(levels)

    design = np.zeros((n_rows, n_cols))
    values = np.zeros(n_rows)
    weights = np.zeros(n_rows)
    rows: List[Optional[int]] = []
    for r, t in enumerate(measured):
        design[r, column[t.parent]] = 1.0
        design[r, column[t.final]] = -1.0
        if fit_shifts:
            design[r, len(levels) + sources.index(t.dataset)] = -1.0
        values[r] = t.cm_energy
        weights[r] = _energy_weight(t, config.nonnumeric_energy_uncertainty)
        rows.append(t.handle)
    for r, lvl in enumerate(zero_levels, start=len(measured)):
        design[r, column[lvl.handle]] = 1.0
        rows.append(None)

    system = PlacementSystem(
        design=design,
        values=values,
        weights=weights,
        rows=rows,
        level_handles=[lvl.handle for lvl in levels],
        sources=list(sources) if fit_shifts else [],
    )
    system.refresh_zero_weights()
    return system


@dataclass
class EnergyFitResult:
    """
    Result of the level energy fit.

    Attributes:
        level_energies: Fitted energy per level handle
        level_uncertainties: Uncertainty per level handle
        transition_energies: Fitted (value, uncertainty) per (parent, final)
        shifts: Fitted (value, uncertainty) per dataset, empty without shifts
        chi2: Weighted sum of squared residuals
        dof: Unique measured transitions minus fitted levels
        sigma: Residual scale applied to the covariance
        rank: Rank of the normal matrix
        n_unknowns: Number of fitted parameters
        n_reviews: Reviewer calls made by the outlier pass
        system: Final placement system
        covariance: Unscaled covariance (pseudoinverse of the normal matrix)
        diagnostics: Non-fatal problems found
    """

    level_energies: Dict[int, float]
    level_uncertainties: Dict[int, float]
    transition_energies: Dict[LevelPair, Tuple[float, float]]
    shifts: Dict[str, Tuple[float, float]]
    chi2: float
    dof: int
    sigma: float
    rank: int
    n_unknowns: int
    n_reviews: int
    system: PlacementSystem
    covariance: np.ndarray
    diagnostics: List[str] = field(default_factory=list)

    @property
    def reduced_chi2(self) -> float:
        return self.chi2 / self.dof if self.dof > 0 else self.chi2

    @property
    def is_underdetermined(self) -> bool:
        return self.rank < self.n_unknowns

    def residuals(self) -> np.ndarray:
        s = self.system
        params = np.array(
            [self.level_energies[h] for h in s.level_handles] + [self.shifts[d][0] for d in s.sources]
        )
        return s.values - s.design @ params

    def summary(self) -> str:
        lines = [
            "Level energy fit",
            "=" * 40,
            f"Levels: {len(self.level_energies)}, rows: {len(self.system.rows)}, "
            f"rank: {self.rank}/{self.n_unknowns}",
            f"chi2 = {self.chi2:.4g}, dof = {self.dof}, chi2/dof = {self.reduced_chi2:.4g}",
            f"Reviewer calls: {self.n_reviews}",
        ]
        for handle, value in self.level_energies.items():
            lines.append(f"  level {handle}: {value:.4f} +/- {self.level_uncertainties[handle]:.4f}")
        for dataset, (value, unc) in self.shifts.items():
            lines.append(f"  shift {dataset}: {value:.4f} +/- {unc:.4f}")
        if self.diagnostics:
            lines.append("Diagnostics:")
            lines.extend(f"  - {d}" for d in self.diagnostics)
        return "\n".join(lines)


def _competing(scheme: LevelScheme, t: Transition):
    return [
        (o.dataset, o.energy, o.energy_uncertainty)
        for o in scheme.transitions
        if o.handle != t.handle and o.parent == t.parent and o.final == t.final
    ]


def _solve(system: PlacementSystem) -> Tuple[np.ndarray, PseudoInverse, float]:
    solution, inverse = weighted_normal_solve(system.design, system.weights, system.values)
    residuals = system.values - system.design @ solution
    chi2 = max(float(np.dot(system.weights, residuals ** 2)), 0.0)
    return solution, inverse, chi2


def fit_level_energies(
    scheme: LevelScheme,
    reviewer: Optional[Reviewer] = None,
    config: Optional[ReconcilerConfig] = None,
) -> EnergyFitResult:
    """
    Fit level energies to all measured transition energies.

    Parameters
    ----------
    scheme : LevelScheme
        Combined scheme; accepted uncertainty increases are written to its
        transitions.
    reviewer : Reviewer, optional
        Outlier decisions. Defaults to declining every request.
    config : ReconcilerConfig, optional
        Thresholds and defaults.

    Returns
    -------
    EnergyFitResult
        Fitted energies, propagated uncertainties and diagnostics.
    """
    config = config or ReconcilerConfig()
    reviewer = reviewer or DecliningReviewer()
    system = build_placement_system(scheme, config)
    diagnostics: List[str] = []
    if not system.rows:
        diagnostics.append("No measured transitions to fit")
        logger.warning(diagnostics[-1])
        return EnergyFitResult({}, {}, {}, {}, 0.0, 0, 1.0, 0, 0, 0, system, np.zeros((0, 0)), diagnostics)

    logger.info(
        f"Energy fit: {len(system.rows)} rows, {system.n_levels} levels, "
        f"{len(system.sources)} shift columns"
    )
    n_reviews = 0
    while True:
        solution, inverse, chi2 = _solve(system)
        measured = system.measurement_rows
        if not measured:
            break
        residuals = system.values - system.design @ solution
        contributions = system.weights[measured] * residuals[measured] ** 2
        worst = measured[int(np.argmax(contributions))]
        n_sigma = math.sqrt(float(contributions.max()))
        if n_sigma <= config.energy_outlier_sigma:
            break

        t = scheme.transitions[system.rows[worst]]
        suggested = abs(float(residuals[worst]))
        context = ReviewContext(
            kind="energy",
            transition=t.handle,
            parent=t.parent,
            measured=float(system.values[worst]),
            fitted=float(system.values[worst] - residuals[worst]),
            sigma=1.0 / math.sqrt(system.weights[worst]),
            n_sigma=n_sigma,
            competing=_competing(scheme, t),
        )
        n_reviews += 1
        decision = reviewer.request_uncertainty_increase(t, context, suggested)
        new_sigma = decision.resolved_sigma(suggested)
        if new_sigma is None:
            logger.info(f"Outlier {t.energy_text} ({t.dataset}) kept at {n_sigma:.1f} sigma")
            break
        logger.info(f"Energy uncertainty of {t.energy_text} ({t.dataset}) raised to {new_sigma:g}")
        t.set_energy_uncertainty(new_sigma)
        system.weights[worst] = 1.0 / (new_sigma * new_sigma)
        system.refresh_zero_weights()

    if inverse.rank < system.n_unknowns:
        message = (
            f"Level scheme system is underdetermined: rank {inverse.rank} "
            f"for {system.n_unknowns} unknowns"
        )
        diagnostics.append(message)
        logger.warning(message)
        warnings.warn(message, UnderdeterminedSystemWarning, stacklevel=2)

    n_unique = len({(scheme.transitions[h].parent, scheme.transitions[h].final) for h in system.rows if h is not None})
    dof = n_unique - system.n_levels
    if dof > 0:
        sigma = math.sqrt(chi2 / dof)
    else:
        sigma = 1.0
        message = f"No degrees of freedom ({n_unique} transitions, {system.n_levels} levels); sigma set to 1"
        diagnostics.append(message)
        logger.warning(message)
        warnings.warn(message, UnderdeterminedSystemWarning, stacklevel=2)

    V = inverse.matrix
    variances = np.clip(np.diag(V), 0.0, None)
    level_energies: Dict[int, float] = {}
    level_uncertainties: Dict[int, float] = {}
    for i, handle in enumerate(system.level_handles):
        level_energies[handle] = float(solution[i])
        level_uncertainties[handle] = sigma * math.sqrt(variances[i])

    shifts: Dict[str, Tuple[float, float]] = {}
    for k, dataset in enumerate(system.sources):
        i = system.n_levels + k
        shifts[dataset] = (float(solution[i]), sigma * math.sqrt(variances[i]))

    transition_energies: Dict[LevelPair, Tuple[float, float]] = {}
    column = {h: i for i, h in enumerate(system.level_handles)}
    V_levels = V[: system.n_levels, : system.n_levels]
    for t in scheme.transitions:
        if t.parent not in column or t.final not in column or t.parent == t.final:
            continue
        pair = (t.parent, t.final)
        if pair in transition_energies:
            continue
        g = np.zeros(system.n_levels)
        g[column[t.parent]] = 1.0
        g[column[t.final]] = -1.0
        value = float(g @ solution[: system.n_levels])
        variance = max(float(g @ V_levels @ g), 0.0)
        transition_energies[pair] = (value, sigma * math.sqrt(variance))

    return EnergyFitResult(
        level_energies=level_energies,
        level_uncertainties=level_uncertainties,
        transition_energies=transition_energies,
        shifts=shifts,
        chi2=chi2,
        dof=dof,
        sigma=sigma,
        rank=inverse.rank,
        n_unknowns=system.n_unknowns,
        n_reviews=n_reviews,
        system=system,
        covariance=V,
        diagnostics=diagnostics,
    )


def lab_energy(cm_energy: float, nucid: str) -> float:
    """Adopted (lab-frame) transition energy from a fitted centre-of-mass energy."""
    return cm_energy - recoil_correction(cm_energy, mass_number(nucid))
