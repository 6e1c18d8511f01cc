"""
Tests for ReconcilerConfig.
"""

import json

import pytest

from levelforge.core.config import MatchStrategy, ReconcilerConfig


class TestReconcilerConfig:
    def test_defaults(self):
        config = ReconcilerConfig()
        assert config.energy_match_kev == 3.0
        assert config.confidence_level == 0.99
        assert config.match_strategy is MatchStrategy.HYBRID

    def test_strategy_from_string(self):
        assert ReconcilerConfig(match_strategy="rules").match_strategy is MatchStrategy.RULES

    def test_dict_round_trip(self):
        config = ReconcilerConfig(fit_shifts=True, match_strategy=MatchStrategy.CLUSTER)
        assert ReconcilerConfig.from_dict(config.to_dict()) == config

    def test_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            ReconcilerConfig.from_dict({"energy_window": 2.0})

    @pytest.mark.parametrize("kwargs", [{"confidence_level": 1.0}, {"max_chunk_size": 1}])
    def test_invalid_values(self, kwargs):
        with pytest.raises(ValueError):
            ReconcilerConfig(**kwargs)

    def test_from_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"nonnumeric_intensity_fraction": 0.25}))
        assert ReconcilerConfig.from_json(path).nonnumeric_intensity_fraction == 0.25
