"""
Tests for chunking, level matching and combined-scheme construction.
"""

import logging

import pytest

from levelforge.core.config import MatchStrategy, ReconcilerConfig
from levelforge.core.errors import UnplacedTransitionWarning
from levelforge.core.model import COMBINED_DATASET, Level, LevelScheme, Transition
from levelforge.matching.combine import chunk_levels, combine_scheme, match_levels


def _single_dataset(energies, title="A"):
    scheme = LevelScheme()
    scheme.add_dataset(title)
    for e in energies:
        scheme.add_level(Level.from_fields(e, title))
    return scheme


class TestChunkLevels:
    """Tests for energy windows."""

    def test_second_gap_closes_chunk(self):
        """The level after the second gap starts the next chunk."""
        scheme = _single_dataset(["0", "50", "500", "600", "2000"])
        chunks = chunk_levels(scheme)
        energies = [[scheme.levels[h].energy.value for h in c] for c in chunks]
        assert energies == [[0, 50, 500], [600, 2000]]

    def test_max_chunk_size(self):
        scheme = _single_dataset(["0", "1", "2", "3"])
        chunks = chunk_levels(scheme, ReconcilerConfig(max_chunk_size=2))
        assert [len(c) for c in chunks] == [2, 2]

    def test_every_level_in_exactly_one_chunk(self):
        scheme = _single_dataset([str(10 * i) for i in range(30)] + ["5000", "9000"])
        chunks = chunk_levels(scheme, ReconcilerConfig(max_chunk_size=7))
        flat = sorted(h for c in chunks for h in c)
        assert flat == list(range(len(scheme.levels)))


class TestMatchLevels:
    """Tests for cross-dataset level matching strategies."""

    def test_rules_strategy(self, two_dataset_scheme):
        config = ReconcilerConfig(match_strategy=MatchStrategy.RULES)
        classes = match_levels(two_dataset_scheme, config)
        assert [sorted(c.datasets) for c in classes] == [["A", "B"]] * 3
        assert [c.energy.value for c in classes] == pytest.approx([0.0, 100.0, 300.0])

    def test_cluster_strategy(self):
        scheme = LevelScheme()
        for title in ("A", "B"):
            scheme.add_dataset(title)
            scheme.add_level(Level.from_fields("0", title))
            scheme.add_level(Level.from_fields("1000", title))
        config = ReconcilerConfig(match_strategy="cluster")
        classes = match_levels(scheme, config)
        assert len(classes) == 2
        assert all(sorted(c.datasets) == ["A", "B"] for c in classes)

    def test_hybrid_clusters_ambiguous_chunks(self, caplog):
        scheme = LevelScheme()
        for title in ("A", "B"):
            scheme.add_dataset(title)
        a0 = scheme.add_level(Level.from_fields("0", "A"))
        a1 = scheme.add_level(Level.from_fields("100", "A"))
        scheme.add_level(Level.from_fields("0", "B"))
        scheme.add_level(Level.from_fields("101", "B"))
        scheme.add_transition(Transition.from_fields("100", "A"), a1, a0)

        with caplog.at_level(logging.INFO, logger="levelforge.matching.combine"):
            classes = match_levels(scheme, ReconcilerConfig())
        assert "rules ambiguous" in caplog.text
        for cls in classes:
            assert len(set(cls.datasets)) == len(cls.datasets)
        assert sorted(h for c in classes for h in c.members) == [0, 1, 2, 3]


class TestCombineScheme:
    """Tests for the combined scheme and transition placement."""

    def test_transitions_follow_classes(self, two_dataset_scheme):
        combined = combine_scheme(two_dataset_scheme)
        scheme = combined.scheme
        assert [lvl.dataset for lvl in scheme.levels] == [COMBINED_DATASET] * 3
        assert len(scheme.transitions) == 4
        assert sorted(len(c) for c in combined.transition_classes) == [2, 2]
        for t in scheme.transitions:
            parent = scheme.level(t.parent).energy.value
            final = scheme.level(t.final).energy.value
            assert parent - final == pytest.approx(t.energy)
        assert combined.diagnostics == []
        assert combined.level_map[0] == combined.level_map[3]

    def test_datasets_are_kept(self, two_dataset_scheme):
        combined = combine_scheme(two_dataset_scheme)
        assert combined.scheme.sources() == ["A", "B"]
        assert "3 levels" in combined.summary()

    def test_source_is_untouched(self, two_dataset_scheme):
        before = [(t.parent, t.final) for t in two_dataset_scheme.transitions]
        combine_scheme(two_dataset_scheme)
        assert [(t.parent, t.final) for t in two_dataset_scheme.transitions] == before

    def test_poor_final_match_reported(self):
        scheme = _single_dataset(["0", "1000"])
        scheme.add_transition(Transition.from_fields("400", "A"), 1)
        with pytest.warns(UnplacedTransitionWarning, match="Poor final level match"):
            combined = combine_scheme(scheme)
        assert len(combined.diagnostics) == 1

    def test_missing_explicit_final_level(self):
        scheme = _single_dataset(["0", "1000"])
        scheme.add_transition(Transition.from_fields("1000", "A", final_level_energy="999"), 1)
        with pytest.warns(UnplacedTransitionWarning, match="FL=999"):
            combined = combine_scheme(scheme)
        assert combined.scheme.transitions[0].final is None

    def test_explicit_final_level_follows_class(self):
        scheme = _single_dataset(["0", "1000"])
        scheme.add_transition(Transition.from_fields("1000", "A", final_level_energy="0"), 1, 0)
        combined = combine_scheme(scheme)
        assert combined.scheme.transitions[0].final == combined.level_map[0]
