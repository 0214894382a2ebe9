"""
Tests for simulation configuration loading.
"""

import pytest

from granite_sim.config import SimulationConfig, load_config


class TestLoadConfig:
    def test_defaults(self):
        config = load_config()
        assert config.protection_limit == 35_000
        assert config.wholesale_quiz_threshold == 2
        assert config.hedge_rates == {"basic": 0.005, "full": 0.012}

    def test_missing_file_gives_defaults(self, tmp_path):
        assert load_config(tmp_path / "absent.yaml") == SimulationConfig()

    def test_yaml_overrides(self, tmp_path):
        """Only the keys present in the file change."""
        path = tmp_path / "class.yaml"
        path.write_text("protection_limit: 50000\ntick_seconds: 1.5\n", encoding="utf-8")
        config = load_config(path)
        assert config.protection_limit == 50_000
        assert config.tick_seconds == 1.5
        assert config.depositor_target == 50

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path) == SimulationConfig()

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("protection_limit: [1, 2\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Malformed"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_config(path)

    def test_wrong_type(self, tmp_path):
        path = tmp_path / "typed.yaml"
        path.write_text("tick_seconds: soon\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid config"):
            load_config(path)
