"""
Tests for linear energy shifts between datasets.
"""

import pytest

from levelforge.solvers.shifts import LinearShift, apply_linear_energy_shifts, calculate_linear_energy_shifts

LEVELS = ["0", "100", "200", "300"]


def _shifted_scheme(placed_scheme, offset=0.5):
    gammas = []
    for parent, energy in ((1, 100.0), (2, 200.0), (3, 300.0)):
        gammas.append((parent, 0, "S", str(energy), "0.1", "", ""))
        gammas.append((parent, 0, "A", str(energy - offset), "0.1", "", ""))
    return placed_scheme(LEVELS, gammas)


class TestLinearShifts:
    """Tests for fitting and applying calibration shifts."""

    def test_constant_offset(self, placed_scheme):
        shifts = calculate_linear_energy_shifts(_shifted_scheme(placed_scheme), "S")
        shift = shifts.shifts["A"]
        assert shift.slope == pytest.approx(0.0, abs=1e-9)
        assert shift.intercept == pytest.approx(0.5, abs=1e-6)
        assert shift.n_points == 3
        assert shift.intercept_uncertainty > 0.0
        assert "S" not in shifts.shifts

    def test_apply(self, placed_scheme):
        scheme = _shifted_scheme(placed_scheme)
        shifts = calculate_linear_energy_shifts(scheme, "S")
        assert apply_linear_energy_shifts(scheme, shifts) == 3
        corrected = sorted(t.energy for t in scheme.transitions if t.dataset == "A")
        assert corrected == pytest.approx([100.0, 200.0, 300.0], abs=1e-6)

    def test_unknown_standard(self, placed_scheme):
        assert calculate_linear_energy_shifts(_shifted_scheme(placed_scheme), "Z") is None

    def test_intercept_only_without_standard(self):
        shift = LinearShift(slope=1e-3, intercept=0.2, slope_uncertainty=0.0, intercept_uncertainty=0.0, n_points=2)
        assert shift.apply(100.0, None) == pytest.approx(100.2)
        assert shift.apply(100.0, 100.0) == pytest.approx(100.3)
