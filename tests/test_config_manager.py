"""
Tests for configuration loading.
"""

import pytest
import yaml

from config_manager import DEFAULT_CONFIG, load_config
from exceptions import ConfigError


class TestLoadConfig:
    def test_missing_file_returns_defaults(self, tmp_path):
        config = load_config(tmp_path / "config.yaml")
        assert config == DEFAULT_CONFIG
        assert config is not DEFAULT_CONFIG

    def test_values_merged_over_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.dump({"storage": {"timeout_seconds": 1.5}, "budget": {"savings_ratio": 0.2}}))

        config = load_config(path)
        assert config["storage"]["timeout_seconds"] == 1.5
        assert config["budget"]["savings_ratio"] == 0.2
        assert config["budget"]["over_budget_tolerance"] == 50.0
        assert [c["name"] for c in config["categories"]["defaults"]] == ["Rent", "Groceries", "Savings"]

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert load_config(path) == DEFAULT_CONFIG

    def test_invalid_yaml_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("invalid: yaml: [")

        with pytest.raises(ConfigError) as exc_info:
            load_config(path)
        assert exc_info.value.original_error is not None
        assert exc_info.value.details["path"] == str(path)

    def test_non_mapping_raises(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigError):
            load_config(path)
