"""Shared fixtures for building small level schemes."""

from typing import Optional, Sequence, Tuple

import pytest

from levelforge.core.model import Level, LevelScheme, Transition

# (parent index, final index, dataset, energy, denergy, intensity, dintensity)
GammaSpec = Tuple[int, Optional[int], str, str, str, str, str]


def build_placed_scheme(
    level_energies: Sequence[str],
    gammas: Sequence[GammaSpec],
    nucid: str = "",
    title: str = "Combined",
) -> LevelScheme:
    """One dataset of unique levels carrying transitions measured by several datasets."""
    scheme = LevelScheme(nucid)
    scheme.add_dataset(title)
    handles = [scheme.add_level(Level.from_fields(e, title)) for e in level_energies]
    for parent, final, dataset, energy, denergy, intensity, dintensity in gammas:
        t = Transition.from_fields(energy, dataset, denergy, intensity, dintensity, nuclide=nucid)
        scheme.add_transition(t, handles[parent], None if final is None else handles[final])
    return scheme


@pytest.fixture
def placed_scheme():
    return build_placed_scheme


@pytest.fixture
def two_dataset_scheme():
    """Datasets A and B, each with levels 0, 100, 300 and transitions 100->0, 300->100."""
    scheme = LevelScheme("")
    for title in ("A", "B"):
        scheme.add_dataset(title)
        ground = scheme.add_level(Level.from_fields("0", title, "", "0+"))
        first = scheme.add_level(Level.from_fields("100", title, "0.1", "2+"))
        second = scheme.add_level(Level.from_fields("300", title, "0.1", "4+"))
        scheme.add_transition(Transition.from_fields("100.0", title, "0.1", "100", "5"), first, ground)
        scheme.add_transition(Transition.from_fields("200.0", title, "0.1", "100", "5"), second, first)
    return scheme
