"""
Cross-dataset level matching and combined-scheme construction.

Levels of all datasets are sorted by energy and cut into windows; each window
is partitioned into level classes by the equivalence rules, by clustering, or
by rules with a clustering fallback. Every class becomes one level of a
combined scheme that carries the transitions of all datasets.
"""

from __future__ import annotations

import logging
import warnings
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence

from levelforge.core.config import MatchStrategy, ReconcilerConfig
from levelforge.core.errors import UnplacedTransitionWarning
from levelforge.core.model import COMBINED_DATASET, Level, LevelScheme
from levelforge.core.numeric import Energy
from levelforge.matching.clustering import cluster
from levelforge.matching.equivalence import (
    LevelEquivalenceClass,
    TransitionEquivalenceClass,
    class_index,
    group_levels,
    group_transitions,
)

logger = logging.getLogger(__name__)


def chunk_levels(
    scheme: LevelScheme,
    config: Optional[ReconcilerConfig] = None,
    handles: Optional[Sequence[int]] = None,
) -> List[List[int]]:
    """
    Cut energy-sorted levels into windows for matching.

    A window grows until a second gap of at least ``chunk_gap_kev`` is seen
    or ``max_chunk_size`` levels are collected. A window holding more than
    two adopted levels closes at its first gap. Levels with different
    qualifiers are always separated by a gap.
    """
    config = config or ReconcilerConfig()
    pool = list(range(len(scheme.levels))) if handles is None else list(handles)
    order = sorted(pool, key=lambda h: scheme.levels[h].energy.sort_key())
    chunks: List[List[int]] = []
    i = 0
    while i < len(order):
        chunk = [order[i]]
        adopted = 1 if scheme.levels[order[i]].is_adopted else 0
        i += 1
        jumps = 0
        while i < len(order) and jumps < 2 and len(chunk) < config.max_chunk_size:
            current = scheme.levels[order[i]]
            previous = scheme.levels[order[i - 1]]
            if current.is_adopted:
                adopted += 1
            close = (
                current.energy.qualifier_match(previous.energy)
                and abs(current.energy.diff(previous.energy)) < config.chunk_gap_kev
            )
            if close:
                chunk.append(order[i])
                i += 1
                continue
            jumps += 1
            if adopted > 2:
                jumps = 2
            if jumps < 2:
                chunk.append(order[i])
                i += 1
        chunks.append(chunk)
    return chunks


def _split_by_dataset(
    scheme: LevelScheme,
    handles: Sequence[int],
    config: ReconcilerConfig,
) -> List[LevelEquivalenceClass]:
    classes: List[LevelEquivalenceClass] = []
    for handle in sorted(handles, key=lambda h: scheme.levels[h].energy.sort_key()):
        for cls in classes:
            if cls.can_join(handle):
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


def _cluster_chunk(
    scheme: LevelScheme,
    chunk: Sequence[int],
    n_datasets: int,
    config: ReconcilerConfig,
) -> List[LevelEquivalenceClass]:
    levels = [scheme.levels[h] for h in chunk]
    k_min = max(2, len(chunk) // max(n_datasets, 1))
    result = cluster(levels, k_min, config.max_pam_iterations)
    classes: List[LevelEquivalenceClass] = []
    for group in result.groups:
        classes.extend(_split_by_dataset(scheme, [chunk[i] for i in group], config))
    return classes


def _rules_ambiguous(classes: Sequence[LevelEquivalenceClass], window: float) -> bool:
    """True if two classes could still be the same level by energy alone."""
    for i, a in enumerate(classes):
        for b in classes[i + 1:]:
            if set(a.datasets) & set(b.datasets):
                continue
            if any(la.energy.is_same(lb.energy, window) for la in a.levels for lb in b.levels):
                return True
    return False


def match_levels(
    scheme: LevelScheme,
    config: Optional[ReconcilerConfig] = None,
) -> List[LevelEquivalenceClass]:
    """
    Partition all levels of ``scheme`` into level equivalence classes.

    Returns
    -------
    list of LevelEquivalenceClass
        Classes ordered by energy.
    """
    config = config or ReconcilerConfig()
    n_datasets = len(scheme.datasets)
    chunks = chunk_levels(scheme, config)
    classes: List[LevelEquivalenceClass] = []
    for number, chunk in enumerate(chunks, start=1):
        if config.match_strategy is MatchStrategy.CLUSTER:
            found = _cluster_chunk(scheme, chunk, n_datasets, config)
        else:
            found = group_levels(scheme, chunk, config)
            if config.match_strategy is MatchStrategy.HYBRID and _rules_ambiguous(
                found, config.energy_match_kev
            ):
                logger.info(f"Chunk {number}/{len(chunks)}: rules ambiguous, clustering {len(chunk)} levels")
                found = _cluster_chunk(scheme, chunk, n_datasets, config)
        logger.debug(f"Chunk {number}/{len(chunks)}: {len(chunk)} levels -> {len(found)} classes")
        classes.extend(found)
    classes.sort(key=lambda cls: cls.energy.sort_key())
    logger.info(f"Matched {len(scheme.levels)} levels into {len(classes)} classes")
    return classes


@dataclass
class CombinedScheme:
    """
    Result of merging all datasets into one scheme.

    Attributes:
        scheme: Combined scheme, one level per level class
        source: Scheme the classes were built from
        level_classes: Level classes, ordered like the combined levels
        transition_classes: Transition classes over the combined scheme
        level_map: Source level handle -> combined level handle
        transition_map: Source transition handle -> combined transition handle
        diagnostics: Placement problems found while combining
    """

    scheme: LevelScheme
    source: LevelScheme
    level_classes: List[LevelEquivalenceClass]
    transition_classes: List[TransitionEquivalenceClass]
    level_map: Dict[int, int] = field(default_factory=dict)
    transition_map: Dict[int, int] = field(default_factory=dict)
    diagnostics: List[str] = field(default_factory=list)

    def summary(self) -> str:
        lines = [
            f"Combined scheme: {len(self.scheme.levels)} levels, "
            f"{len(self.transition_classes)} transition classes "
            f"from {len(self.source.datasets)} datasets",
        ]
        for cls, level in zip(self.level_classes, self.scheme.levels):
            members = ", ".join(f"{lvl.energy} ({lvl.dataset})" for lvl in cls.levels)
            lines.append(f"  {level.energy}: {members}")
        if self.diagnostics:
            lines.append("Diagnostics:")
            lines.extend(f"  - {d}" for d in self.diagnostics)
        return "\n".join(lines)


def combine_scheme(
    scheme: LevelScheme,
    config: Optional[ReconcilerConfig] = None,
    level_classes: Optional[List[LevelEquivalenceClass]] = None,
) -> CombinedScheme:
    """
    Build the combined scheme from matched level classes.

    Each class collapses to one level. Every member's outgoing transitions are
    copied under it, keeping their dataset. A transition with an explicit
    final level follows the class of that level; other transitions go to the
    combined level closest to ``parent - transition`` energy.
    """
    config = config or ReconcilerConfig()
    if level_classes is None:
        level_classes = match_levels(scheme, config)

    combined = LevelScheme(scheme.nucid)
    combined.add_dataset(COMBINED_DATASET, nucid=scheme.nucid)
    level_map: Dict[int, int] = {}
    for cls in level_classes:
        handle = combined.add_level(cls.to_single_level(), COMBINED_DATASET)
        for member in cls.members:
            level_map[member] = handle

    diagnostics: List[str] = []
    transition_map: Dict[int, int] = {}
    for cls in level_classes:
        parent = level_map[cls.members[0]]
        for member in cls.levels:
            for t in scheme.outgoing(member.handle):
                copied = replace(t, handle=-1, parent=None, final=None)
                new = combined.add_transition(copied, parent)
                transition_map[t.handle] = new
                final = _combined_final(combined, t, parent, level_map, config, diagnostics)
                if final is not None:
                    combined.set_final(new, final)

    for message in diagnostics:
        logger.warning(message)
        warnings.warn(message, UnplacedTransitionWarning, stacklevel=2)

    transition_classes = group_transitions(combined)
    return CombinedScheme(
        scheme=combined,
        source=scheme,
        level_classes=level_classes,
        transition_classes=transition_classes,
        level_map=level_map,
        transition_map=transition_map,
        diagnostics=diagnostics,
    )


def _combined_final(
    combined: LevelScheme,
    t,
    parent: int,
    level_map: Dict[int, int],
    config: ReconcilerConfig,
    diagnostics: List[str],
) -> Optional[int]:
    if t.final_level_energy:
        if t.final is not None and t.final in level_map:
            return level_map[t.final]
        diagnostics.append(f"No level matches FL={t.final_level_energy} for transition {t.energy_text} ({t.dataset})")
        return None
    if t.energy is None:
        diagnostics.append(f"No energy to place transition {t.energy_text or '?'} ({t.dataset}); left unplaced")
        return None

    parent_level: Level = combined.levels[parent]
    expected = Energy(parent_level.energy.value - t.as_energy().value, parent_level.energy.qualifier)
    target = combined.find_level(expected, COMBINED_DATASET)
    if target is None:
        diagnostics.append(
            f"No final level found for transition {t.energy_text} from level {parent_level.energy} ({t.dataset})"
        )
        return None
    if abs(expected.diff(target.energy)) > config.poor_final_match_kev:
        diagnostics.append(
            f"Poor final level match for transition {t.energy_text} from level "
            f"{parent_level.energy} in dataset {t.dataset}"
        )
    return target.handle
