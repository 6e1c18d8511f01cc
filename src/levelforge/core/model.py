"""
Entity model for measured level schemes.

Levels and transitions from every ingested dataset live in flat tables of a
:class:`LevelScheme` and refer to one another through integer handles (the
index into the owning table). A transition's ``parent``/``final`` handles are
authoritative; each level's ``outgoing``/``incoming`` handle lists are derived
and are kept in step by :meth:`LevelScheme.set_parent` and
:meth:`LevelScheme.set_final`. Copying a scheme is a plain deep copy since no
object references another directly.
"""

from __future__ import annotations

import copy
import logging
import re
import warnings
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from levelforge.core.errors import UnplacedTransitionWarning
from levelforge.core.numeric import Energy, mass_number, parse_numeric, recoil_correction

logger = logging.getLogger(__name__)

ADOPTED_DATASET = "ADOPTED LEVELS, GAMMAS"
RESULT_DATASET = "GAMUT RESULT"
COMBINED_DATASET = "Combined Dataset"

# Uncertainty tokens that make a measured value unusable
BAD_UNCERTAINTY_TOKENS = frozenset({"GT", "LT", "LE", "GE", "CA", "SY"})


def is_adopted_source(source: str) -> bool:
    return source == ADOPTED_DATASET


def is_synthetic_source(source: str) -> bool:
    """Adopted entries and entries produced by a previous fit."""
    return source == ADOPTED_DATASET or "GAMUT" in source


@dataclass
class Level:
    """
    A discrete excitation level reported by one dataset.

    Attributes:
        energy: Level energy (numeric part plus qualifier)
        dataset: Title of the originating dataset
        energy_uncertainty: Energy uncertainty in keV, None when absent
        spin_parity: Raw J-pi field, may be multi-valued or empty
        tag: Explicit cross-dataset identifier, '' when absent
        handle: Index in the owning scheme (assigned on insertion)
        outgoing: Handles of transitions depopulating this level
        incoming: Handles of transitions feeding this level
        beta: Intensity scale factors found for this level, if fitted
        intensity_sources: Datasets the scale factors refer to
    """

    energy: Energy
    dataset: str
    energy_uncertainty: Optional[float] = None
    spin_parity: str = ""
    tag: str = ""
    handle: int = -1
    outgoing: List[int] = field(default_factory=list)
    incoming: List[int] = field(default_factory=list)
    beta: Optional[List[float]] = None
    intensity_sources: Optional[List[str]] = None

    @classmethod
    def from_fields(
        cls,
        energy: str,
        dataset: str,
        energy_uncertainty: str = "",
        spin_parity: str = "",
        tag: str = "",
    ) -> "Level":
        return cls(
            energy=Energy.parse(energy),
            dataset=dataset,
            energy_uncertainty=parse_numeric(energy_uncertainty),
            spin_parity=spin_parity,
            tag=tag.strip(),
        )

    @property
    def parity(self) -> str:
        j = self.spin_parity
        if "+" in j and "-" not in j:
            return "+"
        if "-" in j and "+" not in j:
            return "-"
        return ""

    @property
    def spin(self) -> str:
        """Single integer spin, '' when unknown or multi-valued."""
        j = self.spin_parity
        for ch in "+-()":
            j = j.replace(ch, "")
        return j if re.fullmatch(r"\d+", j) else ""

    @property
    def is_adopted(self) -> bool:
        return is_adopted_source(self.dataset)

    @property
    def energy_text(self) -> str:
        return self.energy.text


@dataclass
class Transition:
    """
    A gamma-ray transition reported by one dataset.

    Numeric fields are None when absent. The ``*_text`` fields keep the raw
    uncertainty tokens (e.g. ``'LT'``, ``'AP'``) that do not parse.

    Attributes:
        energy: Lab-frame energy in keV
        dataset: Title of the originating dataset
        energy_uncertainty: Energy uncertainty in keV
        intensity: Relative intensity
        intensity_uncertainty: Intensity uncertainty
        nuclide: Nuclide identifier (e.g. '60NI'), source of the mass number
        expected_unobserved: Transition expected but not observed
        placement_uncertain: Placement in the scheme is uncertain
        final_level_energy: Explicitly declared final-level energy text
        energy_text: Raw energy field
        energy_uncertainty_text: Raw energy uncertainty field
        intensity_uncertainty_text: Raw intensity uncertainty field
        normalized_intensity: Renormalized intensity, preferred when averaging
        normalized_intensity_uncertainty: Its uncertainty
        handle: Index in the owning scheme
        parent: Handle of the parent level
        final: Handle of the final level, None when unplaced
    """

    energy: Optional[float]
    dataset: str
    energy_uncertainty: Optional[float] = None
    intensity: Optional[float] = None
    intensity_uncertainty: Optional[float] = None
    nuclide: str = ""
    expected_unobserved: bool = False
    placement_uncertain: bool = False
    final_level_energy: Optional[str] = None
    energy_text: str = ""
    energy_uncertainty_text: str = ""
    intensity_uncertainty_text: str = ""
    normalized_intensity: Optional[float] = None
    normalized_intensity_uncertainty: Optional[float] = None
    handle: int = -1
    parent: Optional[int] = None
    final: Optional[int] = None
    energy_method: str = ""
    energy_chi2: str = ""
    intensity_method: str = ""
    intensity_chi2: str = ""

    @classmethod
    def from_fields(
        cls,
        energy: str,
        dataset: str,
        energy_uncertainty: str = "",
        intensity: str = "",
        intensity_uncertainty: str = "",
        nuclide: str = "",
        expected_unobserved: bool = False,
        placement_uncertain: bool = False,
        final_level_energy: Optional[str] = None,
    ) -> "Transition":
        return cls(
            energy=parse_numeric(energy),
            dataset=dataset,
            energy_uncertainty=parse_numeric(energy_uncertainty),
            intensity=parse_numeric(intensity),
            intensity_uncertainty=parse_numeric(intensity_uncertainty),
            nuclide=nuclide,
            expected_unobserved=expected_unobserved,
            placement_uncertain=placement_uncertain,
            final_level_energy=final_level_energy or None,
            energy_text=energy.strip(),
            energy_uncertainty_text=energy_uncertainty.strip(),
            intensity_uncertainty_text=intensity_uncertainty.strip(),
        )

    @property
    def is_adopted(self) -> bool:
        return is_adopted_source(self.dataset)

    @property
    def mass_number(self) -> int:
        return mass_number(self.nuclide)

    def as_energy(self) -> Energy:
        """Energy value; an absent energy keeps its raw text as qualifier."""
        if self.energy is not None:
            return Energy(self.energy, "", self.energy_text)
        return Energy(0.0, self.energy_text, self.energy_text)

    def recoil_correction(self) -> float:
        return recoil_correction(self.energy if self.energy is not None else 0.0, self.mass_number)

    @property
    def cm_energy(self) -> float:
        """Centre-of-mass energy: lab energy plus recoil correction."""
        return (self.energy if self.energy is not None else 0.0) + self.recoil_correction()

    def energy_match(self, other: "Transition", window: float = 3.0) -> bool:
        return self.as_energy().is_same(other.as_energy(), window)

    def set_energy(self, value: float, uncertainty: Optional[float]) -> None:
        self.energy = float(value)
        self.energy_text = repr(float(value))
        self.set_energy_uncertainty(uncertainty)

    def set_energy_uncertainty(self, uncertainty: Optional[float]) -> None:
        self.energy_uncertainty = uncertainty
        self.energy_uncertainty_text = "" if uncertainty is None else repr(float(uncertainty))

    def set_intensity(self, value: Optional[float], uncertainty: Optional[float]) -> None:
        self.intensity = value
        self.set_intensity_uncertainty(uncertainty)

    def set_intensity_uncertainty(self, uncertainty: Optional[float]) -> None:
        self.intensity_uncertainty = uncertainty
        self.intensity_uncertainty_text = "" if uncertainty is None else repr(float(uncertainty))

    def averaging_intensity(self) -> Optional[float]:
        if self.normalized_intensity is not None:
            return self.normalized_intensity
        return self.intensity

    def averaging_intensity_uncertainty(self) -> Optional[float]:
        if self.normalized_intensity is not None:
            return self.normalized_intensity_uncertainty
        return self.intensity_uncertainty


@dataclass
class Dataset:
    """One experiment's reported scheme: title, reference and ordered levels."""

    title: str
    reference: str = ""
    nucid: str = ""
    level_handles: List[int] = field(default_factory=list)

    @property
    def is_adopted(self) -> bool:
        return is_adopted_source(self.title)


class LevelScheme:
    """
    Arena of levels and transitions from one or more datasets.

    Parameters
    ----------
    nucid : str
        Nuclide identifier shared by the datasets.
    """

    def __init__(self, nucid: str = "") -> None:
        self.nucid = nucid
        self.levels: List[Level] = []
        self.transitions: List[Transition] = []
        self.datasets: List[Dataset] = []

    def __repr__(self) -> str:
        return (
            f"LevelScheme({self.nucid!r}, {len(self.datasets)} datasets, "
            f"{len(self.levels)} levels, {len(self.transitions)} transitions)"
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    def add_dataset(self, title: str, reference: str = "", nucid: str = "") -> Dataset:
        if any(d.title == title for d in self.datasets):
            raise ValueError(f"Dataset '{title}' already present")
        dataset = Dataset(title=title, reference=reference, nucid=nucid or self.nucid)
        self.datasets.append(dataset)
        return dataset

    def add_level(self, level: Level, dataset: Optional[str] = None) -> int:
        title = dataset if dataset is not None else level.dataset
        owner = self.dataset(title)
        level.dataset = title
        level.handle = len(self.levels)
        level.outgoing = []
        level.incoming = []
        self.levels.append(level)
        owner.level_handles.append(level.handle)
        return level.handle

    def add_transition(
        self,
        transition: Transition,
        parent: int,
        final: Optional[int] = None,
    ) -> int:
        transition.handle = len(self.transitions)
        transition.parent = None
        transition.final = None
        self.transitions.append(transition)
        self.set_parent(transition.handle, parent)
        if final is not None:
            self.set_final(transition.handle, final)
        return transition.handle

    def set_parent(self, transition: int, level: Optional[int]) -> None:
        """Place a transition under ``level``, deregistering it from the old parent."""
        t = self.transition(transition)
        if t.parent is not None:
            self.levels[t.parent].outgoing.remove(transition)
        t.parent = level
        if level is not None:
            self.level(level).outgoing.append(transition)

    def set_final(self, transition: int, level: Optional[int]) -> None:
        """Set the final level of a transition, deregistering it from the old one."""
        t = self.transition(transition)
        if t.final is not None:
            self.levels[t.final].incoming.remove(transition)
        t.final = level
        if level is not None:
            self.level(level).incoming.append(transition)

    def copy(self) -> "LevelScheme":
        return copy.deepcopy(self)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def level(self, handle: int) -> Level:
        if not 0 <= handle < len(self.levels):
            raise ValueError(f"Unknown level handle {handle}")
        return self.levels[handle]

    def transition(self, handle: int) -> Transition:
        if not 0 <= handle < len(self.transitions):
            raise ValueError(f"Unknown transition handle {handle}")
        return self.transitions[handle]

    def dataset(self, title: str) -> Dataset:
        for d in self.datasets:
            if d.title == title:
                return d
        raise ValueError(f"Unknown dataset '{title}'")

    def outgoing(self, level: int) -> List[Transition]:
        return [self.transitions[h] for h in self.level(level).outgoing]

    def incoming(self, level: int) -> List[Transition]:
        return [self.transitions[h] for h in self.level(level).incoming]

    def dataset_levels(self, title: str) -> List[Level]:
        return [self.levels[h] for h in self.dataset(title).level_handles]

    def dataset_transitions(self, title: str) -> List[Transition]:
        return [t for lvl in self.dataset_levels(title) for t in self.outgoing(lvl.handle)]

    def iter_placed(self) -> Iterator[Transition]:
        for t in self.transitions:
            if t.parent is not None and t.final is not None:
                yield t

    def sources(self) -> List[str]:
        """Sorted titles of the datasets contributing non-adopted transitions."""
        return sorted({t.dataset for t in self.transitions if not t.is_adopted})

    def has_non_adopted_transitions(self, level: int) -> bool:
        lvl = self.level(level)
        return any(not self.transitions[h].is_adopted for h in lvl.incoming + lvl.outgoing)

    def levels_with_transitions(self) -> List[Level]:
        """Levels touched by at least one non-adopted transition, in table order."""
        return [lvl for lvl in self.levels if self.has_non_adopted_transitions(lvl.handle)]

    def nonzero_transitions(self) -> List[Transition]:
        """Transitions with a measured (positive) energy."""
        return [t for t in self.transitions if t.as_energy().value > 0.0]

    def zero_levels(self, levels: Optional[Iterable[Level]] = None) -> List[Level]:
        pool = self.levels if levels is None else levels
        return [lvl for lvl in pool if lvl.energy.value < 1e-10]

    def find_level(self, energy: Energy, dataset: Optional[str] = None) -> Optional[Level]:
        """Level closest in energy with the same qualifier (first on ties)."""
        pool = self.levels if dataset is None else self.dataset_levels(dataset)
        best: Optional[Level] = None
        best_diff = float("inf")
        for lvl in pool:
            if not lvl.energy.qualifier_match(energy):
                continue
            diff = abs(lvl.energy.diff(energy))
            if diff < best_diff:
                best, best_diff = lvl, diff
        return best

    def find_level_by_text(self, text: str, dataset: Optional[str] = None) -> Optional[Level]:
        """Level whose raw energy field equals ``text`` exactly."""
        pool = self.levels if dataset is None else self.dataset_levels(dataset)
        for lvl in pool:
            if lvl.energy.text == text:
                return lvl
        return None

    # ------------------------------------------------------------------
    # Matching helpers
    # ------------------------------------------------------------------

    def gamma_match(self, a: int, b: int, window: float = 3.0) -> float:
        """
        Fraction of level ``a``'s transitions with an energy match at level ``b``.

        Outgoing transitions are compared with outgoing ones and incoming with
        incoming. A level without transitions matches another level without
        transitions (fraction 1) and nothing else.
        """
        la, lb = self.level(a), self.level(b)
        if not la.outgoing and not la.incoming:
            return 1.0 if not lb.outgoing and not lb.incoming else 0.0
        total = len(la.outgoing) + len(la.incoming)
        count = 0
        for mine, theirs in ((la.outgoing, lb.outgoing), (la.incoming, lb.incoming)):
            for h in mine:
                t = self.transitions[h]
                if any(t.energy_match(self.transitions[h2], window) for h2 in theirs):
                    count += 1
        return count / total

    # ------------------------------------------------------------------
    # Placement and cleaning
    # ------------------------------------------------------------------

    def resolve_final_levels(
        self,
        dataset: Optional[str] = None,
        poor_match_kev: float = 50.0,
    ) -> List[str]:
        """
        Assign final levels to the transitions of ``dataset`` (all when None).

        An explicit final-level energy is looked up by exact text; otherwise the
        closest level to ``parent - transition`` energy is used. Transitions
        with no candidate are left unplaced.

        Returns
        -------
        list of str
            Diagnostics for unplaced transitions and poor matches.
        """
        diagnostics: List[str] = []
        pool = self.transitions if dataset is None else self.dataset_transitions(dataset)
        for t in pool:
            if t.parent is None:
                continue
            parent = self.levels[t.parent]
            target: Optional[Level]
            if t.final_level_energy:
                target = self.find_level_by_text(t.final_level_energy, parent.dataset)
                if target is None:
                    diagnostics.append(f"No level matches FL={t.final_level_energy}")
            elif t.energy is None:
                target = None
                diagnostics.append(
                    f"No energy to place transition {t.energy_text or '?'} from level {parent.energy}"
                )
            else:
                expected = Energy(parent.energy.value - t.as_energy().value, parent.energy.qualifier)
                target = self.find_level(expected, parent.dataset)
                if target is None:
                    diagnostics.append(
                        f"No final level found for transition {t.energy_text} "
                        f"from level {parent.energy}"
                    )
                elif abs(expected.diff(target.energy)) > poor_match_kev:
                    diagnostics.append(
                        f"Poor final level match for transition {t.energy_text} "
                        f"from level {parent.energy} in dataset {t.dataset}"
                    )
            self.set_final(t.handle, None if target is None else target.handle)
        for message in diagnostics:
            logger.warning(message)
            warnings.warn(message, UnplacedTransitionWarning, stacklevel=2)
        return diagnostics

    def remove_bad_uncertainties(self) -> None:
        """Drop energies/intensities whose uncertainty is a limit or estimate token."""
        for t in self.transitions:
            if t.energy_uncertainty_text.upper() in BAD_UNCERTAINTY_TOKENS:
                t.energy = None
                t.energy_text = ""
                t.set_energy_uncertainty(None)
            if t.intensity_uncertainty_text.upper() in BAD_UNCERTAINTY_TOKENS:
                t.set_intensity(None, None)

    def sort_levels(self, dataset: Optional[str] = None) -> None:
        """Sort dataset level order (or the whole table order) by energy."""
        targets = self.datasets if dataset is None else [self.dataset(dataset)]
        for d in targets:
            d.level_handles.sort(key=lambda h: self.levels[h].energy.sort_key())
        for lvl in self.levels:
            lvl.outgoing.sort(key=lambda h: self.transitions[h].as_energy().sort_key())

    # ------------------------------------------------------------------
    # Intensity normalization
    # ------------------------------------------------------------------

    def renormalize_intensities(self, decay: bool = False, dataset: Optional[str] = None) -> None:
        """
        Fill ``normalized_intensity`` for transitions of ``dataset`` (all when None).

        Transitions are always normalized within their own originating dataset.
        Decay convention: the strongest transition of the dataset is 100.
        Adopted convention: the strongest transition of each level is 100 and
        a level with a single transition has intensity 100 without uncertainty.
        Values without a numeric uncertainty are rounded to integers.
        """
        if decay:
            pool = self.transitions if dataset is None else self.dataset_transitions(dataset)
            for group in _by_dataset(pool).values():
                renormalize_group(group, single_is_reference=False)
            return
        levels = self.levels if dataset is None else self.dataset_levels(dataset)
        for lvl in levels:
            for group in _by_dataset(self.outgoing(lvl.handle)).values():
                renormalize_group(group, single_is_reference=True)

    def transitions_by_dataset(self) -> Dict[str, List[Transition]]:
        return _by_dataset(self.transitions)


def _by_dataset(transitions: Iterable[Transition]) -> Dict[str, List[Transition]]:
    grouped: Dict[str, List[Transition]] = {}
    for t in transitions:
        grouped.setdefault(t.dataset, []).append(t)
    return grouped


def renormalize_group(transitions: List[Transition], single_is_reference: bool) -> None:
    if not transitions:
        return
    if single_is_reference and len(transitions) == 1:
        transitions[0].normalized_intensity = 100.0
        transitions[0].normalized_intensity_uncertainty = None
        return
    intensities = [t.intensity if t.intensity is not None else 0.0 for t in transitions]
    max_intensity = max(intensities)
    if single_is_reference:
        if max_intensity < 1e-20:
            return
    elif not any(t.intensity is not None for t in transitions) or max_intensity <= 0.0:
        return
    for t, value in zip(transitions, intensities):
        if t.intensity is not None and t.intensity_uncertainty is not None:
            t.normalized_intensity = 100.0 * value / max_intensity
            t.normalized_intensity_uncertainty = 100.0 * t.intensity_uncertainty / max_intensity
        else:
            t.normalized_intensity = (
                float(round(100.0 * value / max_intensity)) if t.intensity is not None and value != 0.0 else None
            )
            t.normalized_intensity_uncertainty = None
