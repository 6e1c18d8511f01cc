"""
Linear energy calibration shifts between datasets.

Each dataset j is compared with a standard dataset s on the transitions both
measured. A slope and an intercept are fitted so that

    E_j + m_j E_s + b_j = E_s

with weights ``1/(sigma_j^2 + sigma_s^2)``; the shifts are then applied to
every measurement of dataset j.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

from levelforge.core.linalg import weighted_normal_solve
from levelforge.core.model import LevelScheme, Transition, is_synthetic_source
from levelforge.matching.equivalence import TransitionEquivalenceClass, group_transitions

logger = logging.getLogger(__name__)


@dataclass
class LinearShift:
    slope: float
    intercept: float
    slope_uncertainty: float
    intercept_uncertainty: float
    n_points: int

    def apply(self, energy: float, standard_energy: Optional[float]) -> float:
        if standard_energy is None:
            return energy + self.intercept
        return energy + self.slope * standard_energy + self.intercept


@dataclass
class LinearShifts:
    """Shifts of every dataset relative to ``standard``."""

    standard: str
    shifts: Dict[str, LinearShift] = field(default_factory=dict)

    def summary(self) -> str:
        lines = [f"Linear energy shifts relative to {self.standard}"]
        for dataset, s in self.shifts.items():
            lines.append(
                f"  {dataset}: slope {s.slope:.3e} +/- {s.slope_uncertainty:.1e}, "
                f"intercept {s.intercept:.4f} +/- {s.intercept_uncertainty:.4f} ({s.n_points} pts)"
            )
        return "\n".join(lines)


def _sigma(t: Transition, default: float) -> float:
    if t.energy_uncertainty is None or t.energy_uncertainty <= 0.0:
        return default
    return t.energy_uncertainty


def calculate_linear_energy_shifts(
    scheme: LevelScheme,
    standard: str,
    default_uncertainty: float = 1.0,
    classes: Optional[Sequence[TransitionEquivalenceClass]] = None,
) -> Optional[LinearShifts]:
    """
    Fit a linear shift of every dataset against ``standard``.

    Returns
    -------
    LinearShifts or None
        None when ``standard`` reports no transitions, or no transition
        class contains one of its measurements.
    """
    if standard not in scheme.sources():
        logger.info(f"No shifts computable: '{standard}' is not a dataset of the scheme")
        return None
    if classes is None:
        classes = group_transitions(scheme)
    anchored = [cls for cls in classes if _measured(cls.member_from(standard))]
    if not anchored:
        logger.info(f"No shifts computable: no transition class contains '{standard}'")
        return None

    result = LinearShifts(standard)
    for dataset in scheme.sources():
        if dataset == standard or is_synthetic_source(dataset):
            continue
        rows: List[List[float]] = []
        targets: List[float] = []
        weights: List[float] = []
        for cls in anchored:
            mine = cls.member_from(dataset)
            if not _measured(mine):
                continue
            ref = cls.member_from(standard)
            rows.append([ref.energy, 1.0])
            targets.append(ref.energy - mine.energy)
            weights.append(
                1.0 / (_sigma(mine, default_uncertainty) ** 2 + _sigma(ref, default_uncertainty) ** 2)
            )
        if not rows:
            continue
        A = np.array(rows)
        w = np.array(weights)
        params, inverse = weighted_normal_solve(A, w, np.array(targets))
        VAt = inverse.matrix @ A.T
        uncertainties = np.sqrt((VAt * VAt) @ w)
        result.shifts[dataset] = LinearShift(
            slope=float(params[0]),
            intercept=float(params[1]),
            slope_uncertainty=float(uncertainties[0]),
            intercept_uncertainty=float(uncertainties[1]),
            n_points=len(rows),
        )
    return result


def _measured(t: Optional[Transition]) -> bool:
    return t is not None and t.energy is not None and not math.isnan(t.energy)


def apply_linear_energy_shifts(
    scheme: LevelScheme,
    shifts: LinearShifts,
    classes: Optional[Sequence[TransitionEquivalenceClass]] = None,
) -> int:
    """
    Correct the energies of every non-standard measurement in place.

    Where the class has no standard measurement only the intercept is
    applied. Returns the number of corrected transitions.
    """
    if classes is None:
        classes = group_transitions(scheme)
    corrected = 0
    for cls in classes:
        ref = cls.member_from(shifts.standard)
        standard_energy = ref.energy if _measured(ref) else None
        for t in cls.transitions:
            shift = shifts.shifts.get(t.dataset)
            if shift is None or t.energy is None:
                continue
            t.set_energy(shift.apply(t.energy, standard_energy), t.energy_uncertainty)
            corrected += 1
    logger.info(f"Applied linear energy shifts to {corrected} transitions")
    return corrected
