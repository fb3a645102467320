"""
Unit tests for configuration loading and validation.
"""

from pathlib import Path

import pytest
import yaml

from geomatch.config_manager import ConfigManager, MatchConfig
from geomatch.core.errors import ConfigurationError


class TestMatchConfig:

    def test_defaults(self):
        config = MatchConfig()
        assert config.buffer_distance_m == 500.0
        assert config.string_threshold == 0.15
        assert config.max_spatial_distance_m == 2000.0
        assert config.prefix_weight == 0.15
        assert config.worker_count == 4
        assert config.period is None

    @pytest.mark.parametrize("field,value", [
        ("buffer_distance_m", -1),
        ("string_threshold", 1.5),
        ("string_threshold", -0.1),
        ("max_spatial_distance_m", -10),
        ("prefix_weight", 0.3),
        ("region_name_threshold", 2.0),
        ("worker_count", 0),
        ("top_level", ""),
    ])
    def test_out_of_range_rejected(self, field, value):
        with pytest.raises(ConfigurationError):
            MatchConfig(**{field: value})

    def test_configuration_error_is_value_error(self):
        with pytest.raises(ValueError):
            MatchConfig(string_threshold=2)

    def test_to_dict_serializes_paths(self):
        data = MatchConfig(block_dir=Path("/tmp/blocks")).to_dict()
        assert data["block_dir"] == "/tmp/blocks"
        assert data["string_threshold"] == 0.15


class TestConfigManager:

    @pytest.fixture
    def manager(self):
        return ConfigManager()

    def test_sectioned_layout(self, manager):
        config = manager.from_dict({
            "matching": {"string_threshold": 0.1, "period": 2015},
            "execution": {"worker_count": 8},
            "storage": {"results_db": "out/results.db"},
        })
        assert config.string_threshold == 0.1
        assert config.period == 2015
        assert config.worker_count == 8
        assert config.results_db == Path("out/results.db")

    def test_flat_layout(self, manager):
        config = manager.from_dict({"prefix_weight": "0.2", "use_processes": "true"})
        assert config.prefix_weight == 0.2
        assert config.use_processes is True

    def test_unknown_key_rejected(self, manager):
        with pytest.raises(ConfigurationError, match="stringThreshold"):
            manager.from_dict({"matching": {"stringThreshold": 0.1}})

    def test_bad_value_rejected(self, manager):
        with pytest.raises(ConfigurationError):
            manager.from_dict({"matching": {"string_threshold": "high"}})

    def test_bad_section_rejected(self, manager):
        with pytest.raises(ConfigurationError):
            manager.from_dict({"matching": [1, 2]})

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            ConfigManager(tmp_path / "missing.yaml").load()

    def test_load_without_path(self, manager):
        with pytest.raises(ConfigurationError):
            manager.load()

    def test_load_with_env_substitution(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "matching": {"string_threshold": "${GEOMATCH_TEST_THRESHOLD:0.15}"},
            "execution": {"worker_count": "${GEOMATCH_TEST_WORKERS:3}"},
        }))
        monkeypatch.setenv("GEOMATCH_TEST_THRESHOLD", "0.12")
        monkeypatch.delenv("GEOMATCH_TEST_WORKERS", raising=False)

        config = ConfigManager(path).load()
        assert config.string_threshold == 0.12
        assert config.worker_count == 3

    def test_invalid_file_values_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"matching": {"prefix_weight": 0.5}}))
        with pytest.raises(ConfigurationError):
            ConfigManager(path).load()

    def test_example_config_round_trip(self, tmp_path, manager, monkeypatch):
        monkeypatch.delenv("GEOMATCH_WORKERS", raising=False)
        path = tmp_path / "example.yaml"
        manager.save_example_config(path)

        config = ConfigManager(path).load()
        assert config == MatchConfig()
