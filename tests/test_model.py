"""
Tests for the level-scheme entity model.
"""

import pytest

from levelforge.core.errors import UnplacedTransitionWarning
from levelforge.core.model import ADOPTED_DATASET, Level, LevelScheme, Transition
from levelforge.core.numeric import Energy


def _scheme():
    scheme = LevelScheme("60NI")
    scheme.add_dataset("A")
    ground = scheme.add_level(Level.from_fields("0", "A", "", "0+"))
    first = scheme.add_level(Level.from_fields("1332.5", "A", "0.1", "2+"))
    second = scheme.add_level(Level.from_fields("2505.7", "A", "0.2", "4+"))
    return scheme, ground, first, second


class TestLevel:
    """Tests for level spin and parity extraction."""

    @pytest.mark.parametrize(
        "jpi, parity, spin",
        [("2+", "+", "2"), ("(3)-", "-", "3"), ("1/2+", "+", ""), ("2+,3-", "", ""), ("", "", "")],
    )
    def test_spin_parity(self, jpi, parity, spin):
        lvl = Level.from_fields("100", "A", spin_parity=jpi)
        assert lvl.parity == parity
        assert lvl.spin == spin

    def test_absent_uncertainty(self):
        assert Level.from_fields("100", "A", "").energy_uncertainty is None
        assert Level.from_fields("100", "A", "0").energy_uncertainty == 0.0


class TestPlacement:
    """Tests for bidirectional parent/final bookkeeping."""

    def test_add_transition_registers_both_ends(self):
        scheme, ground, first, _ = _scheme()
        t = scheme.add_transition(Transition.from_fields("1332.5", "A"), first, ground)
        assert scheme.level(first).outgoing == [t]
        assert scheme.level(ground).incoming == [t]
        assert scheme.transition(t).parent == first
        assert scheme.transition(t).final == ground

    def test_reassigning_final_deregisters(self):
        scheme, ground, first, second = _scheme()
        t = scheme.add_transition(Transition.from_fields("1173.2", "A"), second, ground)
        scheme.set_final(t, first)
        assert scheme.level(ground).incoming == []
        assert scheme.level(first).incoming == [t]

    def test_unplacing(self):
        scheme, ground, first, _ = _scheme()
        t = scheme.add_transition(Transition.from_fields("1332.5", "A"), first, ground)
        scheme.set_final(t, None)
        assert scheme.transition(t).final is None
        assert scheme.level(ground).incoming == []

    def test_unknown_handle(self):
        scheme, *_ = _scheme()
        with pytest.raises(ValueError):
            scheme.level(42)

    def test_duplicate_dataset(self):
        scheme, *_ = _scheme()
        with pytest.raises(ValueError):
            scheme.add_dataset("A")

    def test_copy_is_independent(self):
        scheme, ground, first, _ = _scheme()
        t = scheme.add_transition(Transition.from_fields("1332.5", "A", "0.1"), first, ground)
        clone = scheme.copy()
        clone.transition(t).set_energy_uncertainty(5.0)
        clone.set_final(t, None)
        assert scheme.transition(t).energy_uncertainty == 0.1
        assert scheme.level(ground).incoming == [t]


class TestLookup:
    """Tests for level lookup and final-level resolution."""

    def test_find_level_closest_same_qualifier(self):
        scheme, ground, first, _ = _scheme()
        assert scheme.find_level(Energy.parse("1330")).handle == first
        assert scheme.find_level(Energy.parse("5+X")) is None

    def test_resolve_by_energy_difference(self):
        scheme, ground, first, second = _scheme()
        t = scheme.add_transition(Transition.from_fields("1173.2", "A"), second)
        assert scheme.resolve_final_levels("A") == []
        assert scheme.transition(t).final == first

    def test_explicit_final_level(self):
        scheme, ground, first, second = _scheme()
        t = scheme.add_transition(Transition.from_fields("1173.2", "A", final_level_energy="0"), second)
        scheme.resolve_final_levels("A")
        assert scheme.transition(t).final == ground

    def test_missing_explicit_final_level(self):
        scheme, ground, first, second = _scheme()
        t = scheme.add_transition(Transition.from_fields("1173.2", "A", final_level_energy="999"), second)
        with pytest.warns(UnplacedTransitionWarning):
            diagnostics = scheme.resolve_final_levels("A")
        assert scheme.transition(t).final is None
        assert len(diagnostics) == 1

    def test_absent_energy_is_left_unplaced(self):
        scheme, ground, first, second = _scheme()
        t = scheme.add_transition(Transition.from_fields("LT", "A"), second)
        with pytest.warns(UnplacedTransitionWarning, match="No energy to place"):
            diagnostics = scheme.resolve_final_levels("A")
        assert scheme.transition(t).final is None
        assert len(diagnostics) == 1

    def test_poor_match_is_reported(self):
        scheme, ground, first, second = _scheme()
        t = scheme.add_transition(Transition.from_fields("900", "A"), second)
        with pytest.warns(UnplacedTransitionWarning, match="Poor final level match"):
            scheme.resolve_final_levels("A", poor_match_kev=50.0)
        assert scheme.transition(t).final == first

    def test_gamma_match(self):
        scheme = LevelScheme()
        for title in ("A", "B"):
            scheme.add_dataset(title)
        a0 = scheme.add_level(Level.from_fields("0", "A"))
        a1 = scheme.add_level(Level.from_fields("100", "A"))
        b0 = scheme.add_level(Level.from_fields("0", "B"))
        b1 = scheme.add_level(Level.from_fields("101", "B"))
        lone = scheme.add_level(Level.from_fields("500", "B"))
        scheme.add_transition(Transition.from_fields("100", "A"), a1, a0)
        scheme.add_transition(Transition.from_fields("102", "B"), b1, b0)
        assert scheme.gamma_match(a1, b1) == 1.0
        assert scheme.gamma_match(a1, lone) == 0.0
        assert scheme.gamma_match(lone, a1) == 0.0


class TestCleaning:
    """Tests for intensity renormalization and bad uncertainties."""

    def test_adopted_convention(self):
        scheme, ground, first, second = _scheme()
        strong = scheme.add_transition(Transition.from_fields("1173.2", "A", "", "80", "4"), second, first)
        weak = scheme.add_transition(Transition.from_fields("2505.7", "A", "", "20", "LT"), second, ground)
        single = scheme.add_transition(Transition.from_fields("1332.5", "A", "", "37", "2"), first, ground)
        scheme.renormalize_intensities()
        assert scheme.transition(strong).normalized_intensity == pytest.approx(100.0)
        assert scheme.transition(strong).normalized_intensity_uncertainty == pytest.approx(5.0)
        assert scheme.transition(weak).normalized_intensity == 25.0
        assert scheme.transition(weak).normalized_intensity_uncertainty is None
        assert scheme.transition(single).normalized_intensity == 100.0
        assert scheme.transition(single).normalized_intensity_uncertainty is None

    def test_decay_convention(self):
        scheme, ground, first, second = _scheme()
        a = scheme.add_transition(Transition.from_fields("1173.2", "A", "", "50", "5"), second, first)
        b = scheme.add_transition(Transition.from_fields("1332.5", "A", "", "200", "10"), first, ground)
        scheme.renormalize_intensities(decay=True)
        assert scheme.transition(a).normalized_intensity == pytest.approx(25.0)
        assert scheme.transition(b).normalized_intensity == pytest.approx(100.0)
        assert scheme.transition(b).normalized_intensity_uncertainty == pytest.approx(5.0)

    def test_remove_bad_uncertainties(self):
        scheme, ground, first, second = _scheme()
        t = scheme.add_transition(Transition.from_fields("1173.2", "A", "SY", "50", "LT"), second, first)
        keep = scheme.add_transition(Transition.from_fields("1332.5", "A", "AP", "100", "5"), first, ground)
        scheme.remove_bad_uncertainties()
        assert scheme.transition(t).energy is None
        assert scheme.transition(t).intensity is None
        assert scheme.transition(keep).energy == 1332.5
        assert scheme.transition(keep).intensity == 100.0

    def test_sources_skip_adopted(self):
        scheme, ground, first, _ = _scheme()
        scheme.add_transition(Transition.from_fields("1332.5", ADOPTED_DATASET), first, ground)
        scheme.add_transition(Transition.from_fields("1332.4", "B"), first, ground)
        scheme.add_transition(Transition.from_fields("1332.6", "A"), first, ground)
        assert scheme.sources() == ["A", "B"]
