"""
End-to-end tests for building an adopted level scheme.
"""

import pytest

from levelforge.core.config import ReconcilerConfig
from levelforge.core.errors import UnplacedTransitionWarning
from levelforge.core.model import RESULT_DATASET, Level, LevelScheme, Transition
from levelforge.review import AcceptingReviewer
from levelforge.workflows.adopted_scheme import build_adopted_scheme

# parent, final, energy, intensity, dintensity
GAMMAS = [
    (1, 0, "100.0", "100", "5"),
    (2, 1, "200.0", "100", "5"),
    (2, 0, "300.0", "50", "3"),
    (3, 2, "200.0", "100", "5"),
    (3, 0, "500.0", "50", "3"),
]


def _scheme(datasets=("A", "B")):
    scheme = LevelScheme("")
    for title in datasets:
        scheme.add_dataset(title)
        handles = [
            scheme.add_level(Level.from_fields(e, title, "0.1"))
            for e in ("0", "100", "300", "500")
        ]
        for parent, final, energy, intensity, dintensity in GAMMAS:
            t = Transition.from_fields(energy, title, "0.1", intensity, dintensity)
            scheme.add_transition(t, handles[parent], handles[final])
    return scheme


def _by_levels(adopted):
    return {
        (round(adopted.level(t.parent).energy.value), round(adopted.level(t.final).energy.value)): t
        for t in adopted.transitions
    }


class TestBuildAdoptedScheme:
    """Tests for the full reconciliation pipeline."""

    def test_adopted_levels_and_transitions(self):
        result = build_adopted_scheme(_scheme())
        adopted = result.adopted
        assert [d.title for d in adopted.datasets] == [RESULT_DATASET]
        assert [lvl.energy.value for lvl in adopted.levels] == pytest.approx([0, 100, 300, 500], abs=1e-6)
        assert adopted.levels[0].energy.value == 0.0
        assert len(adopted.transitions) == 5
        assert result.energy_fit.dof == 1
        assert result.diagnostics == []

    def test_fitted_energies_and_intensities(self):
        transitions = _by_levels(build_adopted_scheme(_scheme()).adopted)
        assert transitions[(300, 0)].energy == pytest.approx(300.0, abs=1e-6)
        assert transitions[(300, 0)].energy_method == "LSQ"
        assert transitions[(300, 100)].intensity == pytest.approx(100.0, rel=1e-6)
        assert transitions[(300, 0)].intensity == pytest.approx(50.0, rel=1e-6)
        assert transitions[(300, 0)].intensity_method == "Scale"
        assert transitions[(100, 0)].intensity == pytest.approx(100.0)

    def test_input_is_not_modified(self):
        scheme = _scheme()
        before = [(t.energy, t.energy_uncertainty, t.intensity_uncertainty) for t in scheme.transitions]
        build_adopted_scheme(scheme, AcceptingReviewer())
        assert [(t.energy, t.energy_uncertainty, t.intensity_uncertainty) for t in scheme.transitions] == before

    def test_averages_per_class(self):
        result = build_adopted_scheme(_scheme())
        assert len(result.averages) == 5
        assert all(avg.energy.n_used == 2 for avg in result.averages)

    def test_linear_shifts_against_reference(self):
        config = ReconcilerConfig(apply_linear_shifts=True)
        result = build_adopted_scheme(_scheme(), AcceptingReviewer(reference_dataset="A"), config)
        assert result.shifts is not None
        assert result.shifts.shifts["B"].intercept == pytest.approx(0.0, abs=1e-6)

    def test_linear_shifts_without_reference(self):
        config = ReconcilerConfig(apply_linear_shifts=True)
        result = build_adopted_scheme(_scheme(), config=config)
        assert result.shifts is None
        assert "No linear energy shifts computable" in result.diagnostics

    def test_summary(self):
        text = build_adopted_scheme(_scheme()).summary()
        assert "Adopted levels: 4, transitions: 5" in text

    def test_transition_without_energy_stays_unplaced(self):
        """A limit-only energy is dropped and must never loop back onto its parent."""
        scheme = _scheme()
        top = scheme.dataset_levels("A")[2].handle
        scheme.add_transition(Transition.from_fields("50", "A", "LT"), top)
        with pytest.warns(UnplacedTransitionWarning, match="No energy to place"):
            result = build_adopted_scheme(scheme)
        assert all(t.final != t.parent for t in result.adopted.transitions)
        assert all(t.energy > 0.0 for t in result.adopted.transitions)
        assert len(result.adopted.transitions) == 5
        assert all(pair[0] != pair[1] for pair in result.energy_fit.transition_energies)
