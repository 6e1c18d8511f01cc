"""Level and transition matching across datasets."""

from levelforge.matching.clustering import ClusteringResult, cluster, level_distance
from levelforge.matching.combine import CombinedScheme, chunk_levels, combine_scheme, match_levels
from levelforge.matching.equivalence import (
    LevelEquivalenceClass,
    TransitionEquivalenceClass,
    group_levels,
    group_transitions,
)

__all__ = [
    "ClusteringResult",
    "CombinedScheme",
    "LevelEquivalenceClass",
    "TransitionEquivalenceClass",
    "chunk_levels",
    "cluster",
    "combine_scheme",
    "group_levels",
    "group_transitions",
    "level_distance",
    "match_levels",
]
