"""
Configuration for level-scheme reconciliation.

Every threshold and default used by the matcher, the averager and the two
reconcilers is an explicit field here and is passed down the call chain.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Union


class MatchStrategy(Enum):
    """How a chunk of energy-sorted levels is partitioned into classes."""

    RULES = "rules"  # greedy first-fit with the equivalence rules
    CLUSTER = "cluster"  # PAM clustering with automatic group count
    HYBRID = "hybrid"  # rules first, clustering when rules leave ambiguity


@dataclass
class ReconcilerConfig:
    """
    Tunables for matching, averaging and fitting.

    Attributes:
        energy_match_kev: Window for level/transition energy matches
        negligible_energy_difference: Numeric difference treated as identical
        chunk_gap_kev: Energy gap that closes a level chunk (two are needed)
        max_chunk_size: Hard cap on levels per clustering chunk
        poor_final_match_kev: Final-level lookup distance reported as poor
        confidence_level: Confidence for the critical reduced chi-squared
        limit_min_uncertainty: Clamp averages to the smallest input uncertainty
        use_non_numeric_uncertainty: Let unweighted averages use values
            without numeric uncertainty
        nonnumeric_energy_uncertainty: Absolute energy uncertainty (keV) for
            transitions without a numeric one
        nonnumeric_intensity_fraction: Fractional intensity uncertainty for
            transitions without a numeric one
        fit_shifts: Fit one systematic energy shift per dataset
        energy_outlier_sigma: Outlier threshold of the energy fit
        intensity_outlier_sigma: Outlier threshold of the intensity fit
        normalize_intensities: Use the normalized beta iteration
        max_pam_iterations: Safety ceiling on PAM swap sweeps
        max_intensity_iterations: Safety ceiling on beta updates
        apply_linear_shifts: Correct energies with linear shifts first
        decay_data: Renormalize adopted intensities like a decay dataset
        match_strategy: Level matching strategy
    """

    energy_match_kev: float = 3.0
    negligible_energy_difference: float = 1e-20
    chunk_gap_kev: float = 100.0
    max_chunk_size: int = 90
    poor_final_match_kev: float = 50.0
    confidence_level: float = 0.99
    limit_min_uncertainty: bool = False
    use_non_numeric_uncertainty: bool = False
    nonnumeric_energy_uncertainty: float = 1.0
    nonnumeric_intensity_fraction: float = 0.5
    fit_shifts: bool = False
    energy_outlier_sigma: float = 3.0
    intensity_outlier_sigma: float = 4.0
    normalize_intensities: bool = True
    max_pam_iterations: int = 1000
    max_intensity_iterations: int = 10000
    apply_linear_shifts: bool = False
    decay_data: bool = False
    match_strategy: MatchStrategy = MatchStrategy.HYBRID

    def __post_init__(self) -> None:
        if isinstance(self.match_strategy, str):
            self.match_strategy = MatchStrategy(self.match_strategy)
        if not 0.0 < self.confidence_level < 1.0:
            raise ValueError(f"confidence_level must be in (0, 1), got {self.confidence_level}")
        if self.max_chunk_size < 2:
            raise ValueError("max_chunk_size must be at least 2")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReconcilerConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        return cls(**data)

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> "ReconcilerConfig":
        return cls.from_dict(json.loads(Path(path).read_text()))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["match_strategy"] = self.match_strategy.value
        return data
