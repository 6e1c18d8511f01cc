"""Solver package."""

from levelforge.solvers.averaging import AverageMethod, AverageResult, Measurement, average
from levelforge.solvers.energy_fit import EnergyFitResult, fit_level_energies
from levelforge.solvers.intensity_fit import IntensityFitResult, fit_intensities, fit_level_intensities
from levelforge.solvers.shifts import LinearShifts, apply_linear_energy_shifts, calculate_linear_energy_shifts

__all__ = [
    "AverageMethod",
    "AverageResult",
    "EnergyFitResult",
    "IntensityFitResult",
    "LinearShifts",
    "Measurement",
    "apply_linear_energy_shifts",
    "average",
    "calculate_linear_energy_shifts",
    "fit_intensities",
    "fit_level_energies",
    "fit_level_intensities",
]
