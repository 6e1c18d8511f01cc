"""
Equivalence classes of levels and transitions across datasets.

A level class collects the reports of one physical level; a transition class
collects the reports of one physical transition. Membership never includes
two entities from the same dataset.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from levelforge.core.config import ReconcilerConfig
from levelforge.core.errors import InconsistentTagError
from levelforge.core.model import Level, LevelScheme, Transition, is_adopted_source, is_synthetic_source
from levelforge.core.numeric import Energy, mean_energy

logger = logging.getLogger(__name__)

LevelKey = Callable[[Optional[int]], Optional[int]]


def _identity_key(handle: Optional[int]) -> Optional[int]:
    return handle


class LevelEquivalenceClass:
    """
    Levels from different datasets believed to be one physical level.

    Parameters
    ----------
    scheme : LevelScheme
        Scheme owning the member levels.
    members : iterable of int, optional
        Initial member handles.
    label : str
        Free-form label.
    """

    def __init__(
        self,
        scheme: LevelScheme,
        members: Optional[Iterable[int]] = None,
        label: str = "",
        energy_window: float = 3.0,
        negligible_difference: float = 1e-20,
    ) -> None:
        self.scheme = scheme
        self.label = label
        self.energy_window = energy_window
        self.negligible_difference = negligible_difference
        self.members: List[int] = []
        for handle in members or []:
            self.add(handle)

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self):
        return iter(self.members)

    def __repr__(self) -> str:
        energies = ", ".join(str(lvl.energy) for lvl in self.levels)
        return f"LevelEquivalenceClass([{energies}])"

    @property
    def levels(self) -> List[Level]:
        return [self.scheme.levels[h] for h in self.members]

    @property
    def tag(self) -> str:
        return next((lvl.tag for lvl in self.levels if lvl.tag), "")

    @property
    def datasets(self) -> List[str]:
        return [lvl.dataset for lvl in self.levels]

    @property
    def adopted_member(self) -> Optional[Level]:
        return next((lvl for lvl in self.levels if is_adopted_source(lvl.dataset)), None)

    @property
    def energy(self) -> Energy:
        return mean_energy(lvl.energy for lvl in self.levels)

    def can_join(self, handle: int) -> bool:
        """True if adding the level keeps datasets unique and tags consistent."""
        candidate = self.scheme.level(handle)
        if candidate.dataset in self.datasets:
            return False
        tag = self.tag
        return not (tag and candidate.tag and tag != candidate.tag)

    def belongs(self, handle: int) -> bool:
        """
        Decide whether a level is another report of this class's level.

        Equal tags always match and differing tags never do. Otherwise the
        level must come from a dataset not yet in the class and agree with
        some member by raw energy text, by a negligible numeric difference,
        or by an energy match corroborated by matching transitions.
        """
        if not self.members:
            return True
        candidate = self.scheme.level(handle)
        tag = self.tag
        if tag and candidate.tag:
            return tag == candidate.tag and candidate.dataset not in self.datasets
        if candidate.dataset in self.datasets:
            return False

        for member in self.levels:
            if member.energy.text == candidate.energy.text:
                return True
            if (
                member.energy.qualifier_match(candidate.energy)
                and abs(member.energy.diff(candidate.energy)) < self.negligible_difference
            ):
                return True
            if member.energy.is_same(candidate.energy, self.energy_window) and (
                self.scheme.gamma_match(member.handle, handle, self.energy_window) > 0.0
                or self.scheme.gamma_match(handle, member.handle, self.energy_window) > 0.0
            ):
                return True
        return False

    def add(self, handle: int) -> None:
        candidate = self.scheme.level(handle)
        tag = self.tag
        if tag and candidate.tag and tag != candidate.tag:
            raise InconsistentTagError(
                f"Level {candidate.energy} tagged '{candidate.tag}' cannot join class tagged '{tag}'"
            )
        if handle not in self.members:
            self.members.append(handle)

    def to_single_level(self) -> Level:
        """
        Collapse the class into one level.

        The adopted member wins when present and a single member is copied.
        Otherwise the mean energy is used with no uncertainty and no spin.
        """
        if not self.members:
            raise ValueError("Cannot collapse an empty level class")
        adopted = self.adopted_member
        if adopted is not None:
            source = adopted
        elif len(self.members) == 1:
            source = self.levels[0]
        else:
            return Level(energy=self.energy, dataset="", tag=self.tag)
        return replace(source, handle=-1, outgoing=[], incoming=[], tag=source.tag or self.tag)


class TransitionEquivalenceClass:
    """
    Transitions from different datasets sharing parent and final level.

    ``level_key`` maps a level handle to the identity used for the parent
    and final comparison, e.g. the index of its level class.
    """

    def __init__(
        self,
        scheme: LevelScheme,
        members: Optional[Iterable[int]] = None,
        level_key: LevelKey = _identity_key,
        label: str = "",
    ) -> None:
        self.scheme = scheme
        self.level_key = level_key
        self.label = label
        self.members: List[int] = []
        for handle in members or []:
            self.add(handle)

    def __len__(self) -> int:
        return len(self.members)

    def __iter__(self):
        return iter(self.members)

    def __repr__(self) -> str:
        energies = ", ".join(t.energy_text or "?" for t in self.transitions)
        return f"TransitionEquivalenceClass([{energies}])"

    @property
    def transitions(self) -> List[Transition]:
        return [self.scheme.transitions[h] for h in self.members]

    @property
    def datasets(self) -> List[str]:
        return [t.dataset for t in self.transitions]

    @property
    def first(self) -> Transition:
        return self.scheme.transitions[self.members[0]]

    @property
    def parent(self) -> Optional[int]:
        return self.first.parent

    @property
    def final(self) -> Optional[int]:
        return self.first.final

    @property
    def adopted_member(self) -> Optional[Transition]:
        return next((t for t in self.transitions if is_adopted_source(t.dataset)), None)

    def contributing(self) -> List[Transition]:
        """Members that take part in averages and fits."""
        return [t for t in self.transitions if not is_synthetic_source(t.dataset)]

    def member_from(self, dataset: str) -> Optional[Transition]:
        return next((t for t in self.transitions if t.dataset == dataset), None)

    def belongs(self, handle: int) -> bool:
        if not self.members:
            return True
        candidate = self.scheme.transition(handle)
        if any(t.dataset == candidate.dataset and t.handle != handle for t in self.transitions):
            return False
        first = self.first
        return self.level_key(first.parent) == self.level_key(candidate.parent) and self.level_key(
            first.final
        ) == self.level_key(candidate.final)

    def add(self, handle: int) -> None:
        candidate = self.scheme.transition(handle)
        if handle in self.members:
            return
        if candidate.dataset in self.datasets:
            raise ValueError(f"Class already holds a transition from dataset '{candidate.dataset}'")
        self.members.append(handle)

    def sort(self) -> None:
        """Order members by energy with any adopted/fit-result member first."""
        self.members.sort(key=lambda h: self.scheme.transitions[h].as_energy().sort_key())
        synthetic = [h for h in self.members if is_synthetic_source(self.scheme.transitions[h].dataset)]
        self.members = synthetic[:1] + [h for h in self.members if h not in synthetic[:1]]


def group_levels(
    scheme: LevelScheme,
    handles: Sequence[int],
    config: Optional[ReconcilerConfig] = None,
) -> List[LevelEquivalenceClass]:
    """Greedy first-fit grouping of levels with :meth:`LevelEquivalenceClass.belongs`."""
    config = config or ReconcilerConfig()
    classes: List[LevelEquivalenceClass] = []
    for handle in handles:
        for cls in classes:
            if cls.belongs(handle):
                cls.add(handle)
                break
        else:
            classes.append(
                LevelEquivalenceClass(
                    scheme,
                    [handle],
                    energy_window=config.energy_match_kev,
                    negligible_difference=config.negligible_energy_difference,
                )
            )
    return classes


def group_transitions(
    scheme: LevelScheme,
    handles: Optional[Sequence[int]] = None,
    level_key: LevelKey = _identity_key,
) -> List[TransitionEquivalenceClass]:
    """
    Group transitions by (parent, final) identity, one per dataset.

    Transitions are visited in energy order and join the first class they
    belong to.
    """
    pool = list(range(len(scheme.transitions))) if handles is None else list(handles)
    pool.sort(key=lambda h: scheme.transitions[h].as_energy().sort_key())
    classes: List[TransitionEquivalenceClass] = []
    for handle in pool:
        for cls in classes:
            if cls.belongs(handle):
                cls.add(handle)
                break
        else:
            classes.append(TransitionEquivalenceClass(scheme, [handle], level_key=level_key))
    for cls in classes:
        cls.sort()
    return classes


def class_index(classes: Sequence[LevelEquivalenceClass]) -> Dict[int, int]:
    """Map each member level handle to the index of its class."""
    index: Dict[int, int] = {}
    for i, cls in enumerate(classes):
        for handle in cls.members:
            index[handle] = i
    return index
