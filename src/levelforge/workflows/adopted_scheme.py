"""
End-to-end construction of an adopted level scheme.

Pipeline:
1. Clean limit/estimate uncertainties and match levels across datasets
2. Optionally correct energies with linear shifts against a standard dataset
3. Fit level energies to all transition energies
4. Fit per-level intensity scale factors
5. Average every transition class for reporting
6. Assemble the adopted scheme from the fitted values

Author: LevelForge Development Team
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from levelforge.core.config import ReconcilerConfig
from levelforge.core.model import RESULT_DATASET, Level, LevelScheme, Transition
from levelforge.matching.combine import CombinedScheme, combine_scheme
from levelforge.review import DecliningReviewer, Reviewer
from levelforge.solvers.averaging import AverageResult, average_energies, average_intensities
from levelforge.solvers.energy_fit import EnergyFitResult, fit_level_energies, lab_energy
from levelforge.solvers.intensity_fit import IntensityFitResult, fit_intensities
from levelforge.solvers.shifts import LinearShifts, apply_linear_energy_shifts, calculate_linear_energy_shifts

logger = logging.getLogger(__name__)

# Fitted zero levels below this stay exactly zero
ZERO_LEVEL_TOLERANCE = 1e-5


@dataclass
class ClassAverage:
    """Reporting averages of one transition class."""

    parent: int
    final: Optional[int]
    energy: Optional[AverageResult]
    intensity: Optional[AverageResult]


@dataclass
class AdoptedSchemeResult:
    """
    Everything produced by :func:`build_adopted_scheme`.

    Attributes:
        combined: Combined scheme with its level and transition classes
        adopted: Adopted scheme (dataset ``RESULT_DATASET``)
        energy_fit: Level energy fit
        intensity_fit: Per-level intensity fits
        averages: Reporting averages per transition class
        shifts: Linear shifts, None if not computed
        diagnostics: All non-fatal problems, in pipeline order
    """

    combined: CombinedScheme
    adopted: LevelScheme
    energy_fit: EnergyFitResult
    intensity_fit: IntensityFitResult
    averages: List[ClassAverage] = field(default_factory=list)
    shifts: Optional[LinearShifts] = None
    diagnostics: List[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            "Adopted Level Scheme",
            "=" * 50,
            f"Nuclide: {self.adopted.nucid or '-'}",
            f"Input datasets: {len(self.combined.source.datasets)}",
            f"Adopted levels: {len(self.adopted.levels)}, transitions: {len(self.adopted.transitions)}",
            f"Energy fit chi2/dof: {self.energy_fit.reduced_chi2:.4g}",
            f"Reviewer calls: {self.energy_fit.n_reviews + self.intensity_fit.n_reviews}",
            "",
        ]
        for lvl in self.adopted.levels:
            unc = "" if lvl.energy_uncertainty is None else f" +/- {lvl.energy_uncertainty:.4f}"
            lines.append(f"{lvl.energy.value:12.4f}{unc}  {lvl.spin_parity}")
            for t in self.adopted.outgoing(lvl.handle):
                intensity = "-" if t.intensity is None else f"{t.intensity:.4g}"
                lines.append(f"    -> {t.energy:.4f}  I={intensity}  [{t.energy_method or 'fit'}]")
        if self.diagnostics:
            lines.append("")
            lines.append("Diagnostics:")
            lines.extend(f"  - {d}" for d in self.diagnostics)
        return "\n".join(lines)


def build_adopted_scheme(
    scheme: LevelScheme,
    reviewer: Optional[Reviewer] = None,
    config: Optional[ReconcilerConfig] = None,
) -> AdoptedSchemeResult:
    """
    Reconcile all datasets of ``scheme`` into one adopted scheme.

    The input scheme is not modified; uncertainty changes accepted by the
    reviewer land on the combined scheme's transitions.
    """
    config = config or ReconcilerConfig()
    reviewer = reviewer or DecliningReviewer()
    diagnostics: List[str] = []

    work = scheme.copy()
    work.remove_bad_uncertainties()
    combined = combine_scheme(work, config)
    diagnostics.extend(combined.diagnostics)
    merged = combined.scheme

    shifts = None
    if config.apply_linear_shifts:
        standard = reviewer.choose_reference_dataset(merged.sources())
        if standard is not None:
            shifts = calculate_linear_energy_shifts(
                merged, standard, config.nonnumeric_energy_uncertainty, combined.transition_classes
            )
        if shifts is None:
            diagnostics.append("No linear energy shifts computable")
        else:
            apply_linear_energy_shifts(merged, shifts, combined.transition_classes)

    merged.renormalize_intensities(decay=config.decay_data)
    energy_fit = fit_level_energies(merged, reviewer, config)
    diagnostics.extend(energy_fit.diagnostics)
    intensity_fit = fit_intensities(merged, reviewer, config)
    diagnostics.extend(intensity_fit.diagnostics)

    averages = [
        ClassAverage(
            parent=cls.parent,
            final=cls.final,
            energy=average_energies(cls.transitions, config),
            intensity=average_intensities(cls.transitions, config),
        )
        for cls in combined.transition_classes
    ]

    adopted = _assemble(merged, energy_fit, intensity_fit, averages, config)
    logger.info(
        f"Adopted scheme: {len(adopted.levels)} levels, {len(adopted.transitions)} transitions"
    )
    return AdoptedSchemeResult(
        combined=combined,
        adopted=adopted,
        energy_fit=energy_fit,
        intensity_fit=intensity_fit,
        averages=averages,
        shifts=shifts,
        diagnostics=diagnostics,
    )


def _assemble(
    merged: LevelScheme,
    energy_fit: EnergyFitResult,
    intensity_fit: IntensityFitResult,
    averages: List[ClassAverage],
    config: ReconcilerConfig,
) -> LevelScheme:
    adopted = LevelScheme(merged.nucid)
    adopted.add_dataset(RESULT_DATASET, nucid=merged.nucid)

    handles: Dict[int, int] = {}
    for lvl in merged.levels:
        energy = lvl.energy
        uncertainty = lvl.energy_uncertainty
        if lvl.handle in energy_fit.level_energies:
            fitted = energy_fit.level_energies[lvl.handle]
            if lvl.energy.value < 1e-10 and abs(fitted) < ZERO_LEVEL_TOLERANCE:
                fitted = 0.0
            energy = lvl.energy.with_value(fitted)
            uncertainty = energy_fit.level_uncertainties[lvl.handle]
        handles[lvl.handle] = adopted.add_level(
            Level(
                energy=energy,
                dataset=RESULT_DATASET,
                energy_uncertainty=uncertainty,
                spin_parity=lvl.spin_parity,
                tag=lvl.tag,
                beta=lvl.beta,
                intensity_sources=lvl.intensity_sources,
            )
        )

    intensities = intensity_fit.intensities()
    seen = set()
    for avg in averages:
        pair: Tuple[int, Optional[int]] = (avg.parent, avg.final)
        if pair in seen:
            continue
        seen.add(pair)
        if pair in energy_fit.transition_energies:
            value, sigma = energy_fit.transition_energies[pair]
            energy, energy_unc = lab_energy(value, merged.nucid), sigma
            method, chi2 = "LSQ", "%1.3f" % energy_fit.reduced_chi2
        elif avg.energy is not None:
            energy, energy_unc = avg.energy.value, avg.energy.uncertainty
            method, chi2 = avg.energy.method.value, avg.energy.chi2_text
        else:
            continue

        if pair in intensities:
            intensity, intensity_unc = intensities[pair]
            intensity_method, intensity_chi2 = "Scale", "-"
        elif avg.intensity is not None:
            intensity, intensity_unc = avg.intensity.value, avg.intensity.uncertainty
            intensity_method, intensity_chi2 = avg.intensity.method.value, avg.intensity.chi2_text
        else:
            intensity, intensity_unc = None, None
            intensity_method, intensity_chi2 = "", "-"

        t = Transition(
            energy=None,
            dataset=RESULT_DATASET,
            nuclide=merged.nucid,
            energy_method=method,
            energy_chi2=chi2,
            intensity_method=intensity_method,
            intensity_chi2=intensity_chi2,
        )
        t.set_energy(energy, energy_unc)
        t.set_intensity(intensity, intensity_unc)
        final = None if avg.final is None else handles[avg.final]
        adopted.add_transition(t, handles[avg.parent], final)

    adopted.renormalize_intensities(decay=config.decay_data)
    for t in adopted.transitions:
        if t.normalized_intensity is not None:
            t.set_intensity(t.normalized_intensity, t.normalized_intensity_uncertainty)
    adopted.sort_levels()
    return adopted
