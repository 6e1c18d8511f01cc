"""
Averaging of repeated measurements of one quantity.

Three estimators are tried in order: the inverse-variance weighted average,
the normalized residual method (NRM), which lowers the weight of
inconsistent points until every normalized residual is acceptable, and the
unweighted mean. The first whose reduced chi-squared is below the critical
value at the requested confidence is kept.

References:
- M. U. Rajput, T. D. MacMahon, Nucl. Instr. Meth. A312 (1992) 289
- M. J. Woods, A. S. Munster, NPL Report RS(EXT) 95 (1988)

Author: LevelForge Development Team
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

import numpy as np
from scipy import stats

from levelforge.core.config import ReconcilerConfig
from levelforge.core.model import Transition, is_synthetic_source

logger = logging.getLogger(__name__)


class AverageMethod(Enum):
    """Estimator that produced an average."""

    WEIGHTED = "WtAve"
    NRM = "NRM"
    UNWEIGHTED = "UnwtAve"
    NONE = ""


@dataclass(frozen=True)
class Measurement:
    """A value with an optional uncertainty and its source dataset."""

    value: float
    uncertainty: Optional[float] = None
    dataset: str = ""

    @property
    def has_uncertainty(self) -> bool:
        return self.uncertainty is not None and self.uncertainty > 0.0


@dataclass
class AverageResult:
    """
    Combined estimate of a set of measurements.

    Attributes:
        value: Combined value
        uncertainty: Combined uncertainty (None if not determinable)
        method: Estimator used
        reduced_chi2: Reduced chi-squared behind the decision, None if unused
        critical_chi2: Critical reduced chi-squared it was compared with
        n_used: Number of measurements combined
    """

    value: float
    uncertainty: Optional[float]
    method: AverageMethod
    reduced_chi2: Optional[float] = None
    critical_chi2: Optional[float] = None
    n_used: int = 1

    @property
    def chi2_text(self) -> str:
        return "-" if self.reduced_chi2 is None else "%1.3f" % self.reduced_chi2

    @property
    def accepted(self) -> bool:
        if self.reduced_chi2 is None or self.critical_chi2 is None:
            return True
        return self.reduced_chi2 < self.critical_chi2

    def summary(self) -> str:
        unc = "-" if self.uncertainty is None else f"{self.uncertainty:.4g}"
        label = self.method.value or "single"
        return f"{self.value:.6g} +/- {unc} [{label}, chi2/dof={self.chi2_text}, n={self.n_used}]"


def critical_reduced_chi2(dof: int, confidence: float = 0.99) -> float:
    """Reduced chi-squared exceeded with probability ``1 - confidence``."""
    if dof <= 0:
        return math.inf
    return float(stats.chi2.ppf(confidence, dof) / dof)


def _weighted_stats(values: np.ndarray, weights: np.ndarray):
    total = weights.sum()
    mean = float(np.dot(weights, values) / total)
    chi2 = float(np.dot(weights, (values - mean) ** 2))
    dof = len(values) - 1
    reduced = chi2 / dof if dof > 0 else 0.0
    internal = 1.0 / math.sqrt(total)
    external = internal * math.sqrt(reduced)
    return mean, max(internal, external), reduced


def weighted_average(measurements: Sequence[Measurement], confidence: float = 0.99) -> AverageResult:
    """
    Inverse-variance weighted average.

    The uncertainty is the larger of the internal ``1/sqrt(sum w)`` and the
    external (chi-squared scaled) uncertainty.
    """
    usable = [m for m in measurements if m.has_uncertainty]
    if len(usable) < 2:
        raise ValueError("Weighted average needs at least two measurements with uncertainties")
    values = np.array([m.value for m in usable])
    weights = np.array([1.0 / m.uncertainty ** 2 for m in usable])
    mean, sigma, reduced = _weighted_stats(values, weights)
    return AverageResult(
        value=mean,
        uncertainty=sigma,
        method=AverageMethod.WEIGHTED,
        reduced_chi2=reduced,
        critical_chi2=critical_reduced_chi2(len(usable) - 1, confidence),
        n_used=len(usable),
    )


def nrm_average(
    measurements: Sequence[Measurement],
    confidence: float = 0.99,
    max_iterations: int = 1000,
) -> AverageResult:
    """
    Normalized residual method average.

    While the largest normalized residual
    ``R_i = (x_i - x) * sqrt(w_i W / (W - w_i))`` exceeds
    ``R0 = 1.8 + 0.4 log10(N)``, the weight of that point is lowered so that
    its residual equals R0 with the mean held fixed. With no outlying point
    this is the weighted average.
    """
    usable = [m for m in measurements if m.has_uncertainty]
    n = len(usable)
    if n < 3:
        raise ValueError("NRM needs at least three measurements with uncertainties")
    values = np.array([m.value for m in usable])
    weights = np.array([1.0 / m.uncertainty ** 2 for m in usable])
    r0 = 1.8 + 0.4 * math.log10(n)

    for _ in range(max_iterations):
        total = weights.sum()
        mean = np.dot(weights, values) / total
        others = total - weights
        residuals = (values - mean) * np.sqrt(weights * total / others)
        worst = int(np.argmax(np.abs(residuals)))
        if abs(residuals[worst]) <= r0:
            break
        d = (values[worst] - mean) ** 2
        s = others[worst]
        inflated = (-d * s + math.sqrt(d * d * s * s + 4.0 * d * r0 * r0 * s)) / (2.0 * d)
        if abs(inflated - weights[worst]) <= 1e-12 * weights[worst]:
            break
        weights[worst] = inflated

    mean, sigma, reduced = _weighted_stats(values, weights)
    return AverageResult(
        value=mean,
        uncertainty=sigma,
        method=AverageMethod.NRM,
        reduced_chi2=reduced,
        critical_chi2=critical_reduced_chi2(n - 1, confidence),
        n_used=n,
    )


def unweighted_average(
    measurements: Sequence[Measurement],
    include_nonnumeric: bool = False,
) -> Optional[AverageResult]:
    """Arithmetic mean; the uncertainty is the standard error of the mean."""
    usable = [m for m in measurements if include_nonnumeric or m.has_uncertainty]
    usable = [m for m in usable if not math.isnan(m.value)]
    if not usable:
        return None
    if len(usable) == 1:
        only = usable[0]
        return AverageResult(only.value, only.uncertainty, AverageMethod.UNWEIGHTED, n_used=1)
    values = np.array([m.value for m in usable])
    sigma = float(np.std(values, ddof=1) / math.sqrt(len(values)))
    return AverageResult(float(values.mean()), sigma, AverageMethod.UNWEIGHTED, n_used=len(values))


def average(
    measurements: Sequence[Measurement],
    confidence: float = 0.99,
    limit_min_uncertainty: bool = False,
    use_non_numeric_uncertainty: bool = False,
) -> Optional[AverageResult]:
    """
    Combine measurements with automatic estimator selection.

    Parameters
    ----------
    measurements : sequence of Measurement
        Contributing measurements.
    confidence : float
        Confidence level of the critical reduced chi-squared.
    limit_min_uncertainty : bool
        Never return an uncertainty below the smallest input uncertainty.
    use_non_numeric_uncertainty : bool
        Let the unweighted fallback use values without an uncertainty.

    Returns
    -------
    AverageResult or None
        None for an empty input. A single measurement is returned as is.
    """
    if not measurements:
        return None
    if len(measurements) == 1:
        only = measurements[0]
        return AverageResult(only.value, only.uncertainty, AverageMethod.NONE, n_used=1)

    uncertain = [m for m in measurements if m.has_uncertainty]
    result: Optional[AverageResult] = None
    if len(uncertain) >= 2:
        weighted = weighted_average(uncertain, confidence)
        if weighted.accepted:
            result = weighted
        elif len(uncertain) >= 3:
            nrm = nrm_average(uncertain, confidence)
            logger.debug(
                f"Weighted chi2/dof {weighted.reduced_chi2:.3f} above "
                f"{weighted.critical_chi2:.3f}, NRM gives {nrm.reduced_chi2:.3f}"
            )
            if nrm.accepted:
                result = nrm
    if result is None:
        result = unweighted_average(measurements, use_non_numeric_uncertainty or len(uncertain) < 2)

    if result is not None and limit_min_uncertainty and uncertain:
        smallest = min(m.uncertainty for m in uncertain)
        if result.uncertainty is None or result.uncertainty < smallest:
            result.uncertainty = smallest
    return result


def energy_measurements(transitions: Sequence[Transition]) -> List[Measurement]:
    return [
        Measurement(t.energy, t.energy_uncertainty, t.dataset)
        for t in transitions
        if not is_synthetic_source(t.dataset) and t.energy is not None
    ]


def intensity_measurements(transitions: Sequence[Transition]) -> List[Measurement]:
    measurements = []
    for t in transitions:
        if is_synthetic_source(t.dataset):
            continue
        value = t.averaging_intensity()
        if value is not None:
            measurements.append(Measurement(value, t.averaging_intensity_uncertainty(), t.dataset))
    return measurements


def average_energies(
    transitions: Sequence[Transition],
    config: Optional[ReconcilerConfig] = None,
) -> Optional[AverageResult]:
    """Average the energies of a transition class; adopted and fit members are skipped."""
    config = config or ReconcilerConfig()
    return average(
        energy_measurements(transitions),
        config.confidence_level,
        config.limit_min_uncertainty,
        config.use_non_numeric_uncertainty,
    )


def average_intensities(
    transitions: Sequence[Transition],
    config: Optional[ReconcilerConfig] = None,
) -> Optional[AverageResult]:
    """Average intensities, preferring renormalized values; None when nothing is measured."""
    config = config or ReconcilerConfig()
    return average(
        intensity_measurements(transitions),
        config.confidence_level,
        config.limit_min_uncertainty,
        config.use_non_numeric_uncertainty,
    )
