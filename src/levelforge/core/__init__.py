"""Core data structures and utilities."""

from levelforge.core.config import MatchStrategy, ReconcilerConfig
from levelforge.core.errors import (
    ConvergenceWarning,
    InconsistentTagError,
    LevelForgeWarning,
    UnderdeterminedSystemWarning,
    UnplacedTransitionWarning,
)
from levelforge.core.model import (
    ADOPTED_DATASET,
    COMBINED_DATASET,
    RESULT_DATASET,
    Dataset,
    Level,
    LevelScheme,
    Transition,
)
from levelforge.core.numeric import Energy, is_numeric, parse_numeric, recoil_correction

__all__ = [
    "ADOPTED_DATASET",
    "COMBINED_DATASET",
    "RESULT_DATASET",
    "ConvergenceWarning",
    "Dataset",
    "Energy",
    "InconsistentTagError",
    "Level",
    "LevelForgeWarning",
    "LevelScheme",
    "MatchStrategy",
    "ReconcilerConfig",
    "Transition",
    "UnderdeterminedSystemWarning",
    "UnplacedTransitionWarning",
    "is_numeric",
    "parse_numeric",
    "recoil_correction",
]
