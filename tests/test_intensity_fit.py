"""
Tests for per-level intensity scale reconciliation.
"""

import numpy as np
import pytest

from levelforge.core.config import ReconcilerConfig
from levelforge.core.errors import ConvergenceWarning
from levelforge.review import AcceptingReviewer, DecliningReviewer
from levelforge.solvers.averaging import intensity_measurements
from levelforge.solvers.intensity_fit import (
    INVALID,
    build_intensity_matrix,
    calc_beta,
    calc_ibar,
    fit_intensities,
    fit_level_intensities,
    golden_section_search,
    solve_scales,
)

LEVELS = ["0", "500", "800", "1000"]
BRANCHES = [(0, "1000", "100", "5"), (1, "500", "50", "2.5"), (2, "200", "20", "1")]


def _branching_scheme(placed_scheme, overrides=None):
    """Level 1000 decays to 0, 500 and 800; datasets A, B, C agree unless overridden."""
    overrides = overrides or {}
    gammas = []
    for dataset in "ABC":
        for final, energy, intensity, dintensity in BRANCHES:
            intensity, dintensity = overrides.get((dataset, final), (intensity, dintensity))
            gammas.append((3, final, dataset, energy, "0.1", intensity, dintensity))
    return placed_scheme(LEVELS, gammas)


class TestIntensityMatrix:
    """Tests for collecting and renormalizing intensities."""

    def test_cells(self, placed_scheme):
        matrix = build_intensity_matrix(_branching_scheme(placed_scheme), 3)
        assert matrix.sources == ["A", "B", "C"]
        assert matrix.intensities.shape == (3, 3)
        assert matrix.valid.all()
        assert matrix.reference == 0

    def test_renormalized_to_strongest(self, placed_scheme):
        scheme = placed_scheme(
            ["0", "500", "1000"],
            [(2, 0, "A", "1000", "", "40", "2"), (2, 1, "A", "500", "", "20", "")],
        )
        matrix = build_intensity_matrix(scheme, 2, ReconcilerConfig(nonnumeric_intensity_fraction=0.5))
        column = sorted(matrix.intensities[:, 0])
        assert column == pytest.approx([50.0, 100.0])
        weak = int(np.argmin(matrix.intensities[:, 0]))
        assert matrix.weights[weak, 0] == pytest.approx(1.0 / 25.0 ** 2)
        assert matrix.scales[(weak, 0)] == pytest.approx(0.4)

    def test_single_transition_is_unmeasured(self, placed_scheme):
        scheme = placed_scheme(["0", "100"], [(1, 0, "A", "100", "", "30", "3")])
        matrix = build_intensity_matrix(scheme, 1)
        assert not matrix.valid.any()
        assert (matrix.intensities == INVALID).all()


class TestScaleSolver:
    """Tests for the beta and Ibar iterations."""

    def test_ibar_and_beta(self):
        I = np.array([[10.0, 20.0], [5.0, 10.0]])
        W = np.ones_like(I)
        ibar, _ = calc_ibar(I, W, np.array([1.0, 2.0]))
        assert ibar == pytest.approx([10.0, 5.0])
        assert calc_beta(I, W, ibar) == pytest.approx([1.0, 2.0])

    def test_unusable_row(self):
        I = np.array([[10.0, 20.0], [INVALID, INVALID]])
        ibar, dibar = calc_ibar(I, np.ones_like(I), np.ones(2))
        assert ibar[1] == INVALID
        assert dibar[1] == INVALID

    def test_golden_section_search(self):
        assert golden_section_search(lambda x: (x - 2.0) ** 2, 0.0, 5.0) == pytest.approx(2.0, abs=1e-4)

    @pytest.mark.parametrize("normalized, tol", [(True, 1e-9), (False, 1e-3)])
    def test_scaled_copy_recovers_factor(self, normalized, tol):
        """A column that is exactly twice the reference gets beta = 2."""
        base = np.array([100.0, 50.0, 20.0])
        I = np.column_stack([base, 2.0 * base])
        W = np.column_stack([np.full(3, 0.01), np.full(3, 0.0025)])
        solution = solve_scales(I, W, normalized=normalized)
        assert solution.converged
        assert solution.beta == pytest.approx([1.0, 2.0], abs=tol)
        assert solution.ibar == pytest.approx(base, rel=1e-3)

    def test_iteration_ceiling_warns(self):
        I = np.array([[100.0, 100.0], [50.0, 50.0]])
        with pytest.warns(ConvergenceWarning):
            solution = solve_scales(I, np.ones_like(I), normalized=True, max_iterations=1)
        assert not solution.converged


class TestFitLevelIntensities:
    """Tests for fitting one level and the outlier pass."""

    @pytest.mark.parametrize("normalize, tol", [(True, 1e-9), (False, 1e-3)])
    def test_identical_datasets(self, placed_scheme, normalize, tol):
        scheme = _branching_scheme(placed_scheme)
        config = ReconcilerConfig(normalize_intensities=normalize)
        fit = fit_level_intensities(scheme, 3, DecliningReviewer(), config)
        assert fit.solution.beta == pytest.approx([1.0, 1.0, 1.0], abs=tol)
        values = {final: value for (_, final), (value, _) in fit.intensities().items()}
        assert values[0] == pytest.approx(100.0, rel=1e-3)
        assert values[1] == pytest.approx(50.0, rel=1e-3)
        assert values[2] == pytest.approx(20.0, rel=1e-3)
        assert fit.n_reviews == 0

    def test_declined_outlier(self, placed_scheme):
        scheme = _branching_scheme(placed_scheme, {("C", 1): ("90", "4")})
        reviewer = DecliningReviewer()
        fit = fit_level_intensities(scheme, 3, reviewer)
        assert reviewer.calls == 1
        assert fit.n_reviews == 1
        outlier = next(t for t in scheme.transitions if t.dataset == "C" and t.final == 1)
        assert outlier.intensity_uncertainty == 4.0

    def test_accepted_outlier(self, placed_scheme):
        scheme = _branching_scheme(placed_scheme, {("C", 1): ("90", "4")})
        reviewer = AcceptingReviewer()
        fit = fit_level_intensities(scheme, 3, reviewer)
        assert reviewer.calls >= 1
        outlier = next(t for t in scheme.transitions if t.dataset == "C" and t.final == 1)
        assert outlier.intensity_uncertainty > 4.0
        values = {final: value for (_, final), (value, _) in fit.intensities().items()}
        assert values[1] == pytest.approx(50.0, rel=0.05)

    def test_accepted_uncertainty_reaches_averages(self, placed_scheme):
        scheme = _branching_scheme(placed_scheme, {("C", 1): ("90", "4")})
        scheme.renormalize_intensities()
        fit_level_intensities(scheme, 3, AcceptingReviewer())
        outlier = next(t for t in scheme.transitions if t.dataset == "C" and t.final == 1)
        (measurement,) = intensity_measurements([outlier])
        assert measurement.uncertainty > 4.0
        assert measurement.uncertainty == pytest.approx(outlier.intensity_uncertainty)


def test_fit_intensities_stores_scales(placed_scheme):
    scheme = _branching_scheme(placed_scheme)
    result = fit_intensities(scheme)
    assert list(result.levels) == [3]
    assert scheme.levels[3].intensity_sources == ["A", "B", "C"]
    assert scheme.levels[3].beta == pytest.approx([1.0, 1.0, 1.0], abs=1e-9)
    assert "level 3" in result.summary()
