"""Exception and warning types."""

from __future__ import annotations


class InconsistentTagError(ValueError):
    """A level equivalence class was built from levels with conflicting tags."""


class LevelForgeWarning(UserWarning):
    """Base category for non-fatal reconciliation diagnostics."""


class UnderdeterminedSystemWarning(LevelForgeWarning):
    """The level-scheme system is rank deficient or has no degrees of freedom."""


class UnplacedTransitionWarning(LevelForgeWarning):
    """A transition has no resolvable final level, or only a poor match."""


class ConvergenceWarning(LevelForgeWarning):
    """An iterative solver stopped at its safety ceiling."""
