"""Tests for config_loader module.

- AAA pattern (Arrange-Act-Assert)
- Descriptive test names: test_unit_scenario_expectedBehavior
- Test isolation (no shared mutable state)
"""

from pathlib import Path

import pytest
import yaml

from crossfilter_analytics.core.config_loader import (
    BinningConfig,
    EngineConfig,
    ExplorerConfig,
    get_project_root,
    load_explorer_config,
)


@pytest.fixture(autouse=True)
def _clear_crossfilter_env(monkeypatch):
    """Make sure no CROSSFILTER_* variable from the outer environment leaks in."""
    import os

    for key in list(os.environ):
        if key.startswith("CROSSFILTER_"):
            monkeypatch.delenv(key, raising=False)


class TestLoadExplorerConfig:
    """Test suite for explorer configuration loading."""

    def test_load_explorer_config_missing_file_returns_defaults(self, tmp_path):
        """Test that a missing YAML file falls back to dataclass defaults."""
        # Arrange
        missing = tmp_path / "does_not_exist.yaml"

        # Act
        config = load_explorer_config(config_path=missing)

        # Assert
        assert config == ExplorerConfig()
        assert config.binning.max_bins == 20
        assert config.binning.max_ordinal_bins == 20
        assert config.binning.continuous_bin_method == "freedman_diaconis"
        assert config.binning.merge_policy == "sequential"
        assert config.engine.connect_retries == 3
        assert config.table.page_size == 100

    def test_load_explorer_config_yaml_values_override_defaults(self, tmp_path):
        """Test that YAML values replace defaults and are type-coerced."""
        # Arrange
        config_file = tmp_path / "explorer.yaml"
        config_file.write_text(
            yaml.dump(
                {
                    "binning": {"max_bins": "12", "min_bin_size": 2, "continuous_bin_method": "scott"},
                    "engine": {"table_name": "rows", "retry_backoff_s": 1},
                    "table": {"page_size": 25},
                }
            )
        )

        # Act
        config = load_explorer_config(config_path=config_file)

        # Assert
        assert config.binning.max_bins == 12
        assert config.binning.min_bin_size == 2
        assert config.binning.continuous_bin_method == "scott"
        assert config.engine.table_name == "rows"
        assert config.engine.retry_backoff_s == 1.0
        assert isinstance(config.engine.retry_backoff_s, float)
        assert config.table.page_size == 25

    def test_load_explorer_config_env_var_beats_yaml(self, tmp_path, monkeypatch):
        """Test precedence: environment variable → YAML → default."""
        # Arrange
        config_file = tmp_path / "explorer.yaml"
        config_file.write_text(yaml.dump({"binning": {"max_bins": 12}}))
        monkeypatch.setenv("CROSSFILTER_MAX_BINS", "7")

        # Act
        config = load_explorer_config(config_path=config_file)

        # Assert
        assert config.binning.max_bins == 7

    def test_load_explorer_config_automatic_section_prefix_env_var_applies(self, tmp_path, monkeypatch):
        """Test that CROSSFILTER_<SECTION>_<KEY> overrides keys without an explicit mapping."""
        # Arrange
        monkeypatch.setenv("CROSSFILTER_BINNING_SKEW_RATIO", "3.5")
        monkeypatch.setenv("CROSSFILTER_ENGINE_TABLE_NAME", "other_table")

        # Act
        config = load_explorer_config(config_path=tmp_path / "missing.yaml")

        # Assert
        assert config.binning.skew_ratio == 3.5
        assert config.engine.table_name == "other_table"

    def test_load_explorer_config_custom_thresholds_loaded_as_floats(self, tmp_path):
        """Test that per-column custom thresholds are read from YAML."""
        # Arrange
        config_file = tmp_path / "explorer.yaml"
        config_file.write_text(yaml.dump({"binning": {"custom_thresholds": {"age": [18, 65]}}}))

        # Act
        config = load_explorer_config(config_path=config_file)

        # Assert
        assert config.binning.custom_thresholds == {"age": [18.0, 65.0]}

    def test_load_explorer_config_invalid_yaml_raises_valueerror(self, tmp_path):
        """Test that malformed YAML is reported as ValueError."""
        # Arrange
        config_file = tmp_path / "explorer.yaml"
        config_file.write_text("binning: [unclosed")

        # Act & Assert
        with pytest.raises(ValueError, match="Invalid YAML"):
            load_explorer_config(config_path=config_file)

    def test_load_explorer_config_uncoercible_value_raises_valueerror(self, tmp_path):
        """Test that a value that cannot be coerced fails loudly."""
        # Arrange
        config_file = tmp_path / "explorer.yaml"
        config_file.write_text(yaml.dump({"binning": {"max_bins": "lots"}}))

        # Act & Assert
        with pytest.raises(ValueError, match="Type coercion failed"):
            load_explorer_config(config_path=config_file)

    def test_load_explorer_config_repo_default_file_is_valid(self):
        """Test that the shipped config/explorer.yaml loads."""
        # Arrange
        config_path = get_project_root() / "config" / "explorer.yaml"

        # Act
        config = load_explorer_config(config_path=config_path)

        # Assert
        assert config.binning.max_folded_keys == 1000
        assert config.binning.kde_bandwidth == 0.0
        assert config.engine.database == ":memory:"


class TestConfigValidation:
    """Test suite for dataclass validation."""

    @pytest.mark.parametrize(
        "overrides",
        [
            {"continuous_bin_method": "sturges"},
            {"date_interval": "fortnight"},
            {"merge_policy": "largest"},
            {"max_ordinal_bins": 1},
            {"min_bin_size": 0},
            {"max_bins": 0},
            {"kde_bandwidth": -1.0},
        ],
    )
    def test_binning_config_invalid_value_raises_valueerror(self, overrides):
        """Test that invalid binning parameters are rejected."""
        # Act & Assert
        with pytest.raises(ValueError):
            BinningConfig(**overrides)

    def test_engine_config_zero_retries_raises_valueerror(self):
        """Test that at least one connection attempt is required."""
        # Act & Assert
        with pytest.raises(ValueError, match="connect_retries"):
            EngineConfig(connect_retries=0)

    def test_get_project_root_contains_config_directory(self):
        """Test that the project root resolves to the repository root."""
        # Act
        root = get_project_root()

        # Assert
        assert isinstance(root, Path)
        assert (root / "config").is_dir()
