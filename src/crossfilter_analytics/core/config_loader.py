"""Centralized configuration loader for YAML-based configuration.

This module provides functions to load explorer configuration with:
- Environment variable overrides (env var → YAML → defaults)
- Type coercion (string to float, bool, int)
- Schema validation using dataclasses
- Graceful degradation (missing files use defaults)
"""

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import yaml  # type: ignore

logger = logging.getLogger(__name__)

VALID_BIN_METHODS = ("freedman_diaconis", "scott")
VALID_DATE_INTERVALS = ("hour", "day", "week", "month", "year")
VALID_MERGE_POLICIES = ("sequential", "nearest")


def get_project_root() -> Path:
    """
    Get project root directory.

    Uses pattern: config_loader.py → core/ → crossfilter_analytics/ → src/ → project_root

    Returns:
        Path to project root directory
    """
    return Path(__file__).parent.parent.parent.parent


def _coerce_type(value: Any, target_type: type) -> Any:
    """
    Coerce value to target type.

    Handles:
    - String "30.0" → float 30.0
    - String "true"/"false" → bool True/False (case-insensitive)
    - String "123" → int 123

    Args:
        value: Value to coerce
        target_type: Target type (float, bool, int, str)

    Returns:
        Coerced value

    Raises:
        ValueError: If coercion fails
    """
    if value is None:
        return None

    if isinstance(value, target_type):
        return value

    if target_type is bool:
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value)

    if target_type is float:
        return float(value)

    if target_type is int:
        if isinstance(value, str):
            return int(float(value))  # Handle "30.0" → 30
        return int(value)

    if target_type is str:
        return str(value)

    return value


def _apply_env_overrides(
    config: dict[str, Any],
    env_mapping: dict[str, str] | None = None,
    prefix: str = "",
) -> dict[str, Any]:
    """
    Apply environment variable overrides to a flat config section.

    Supports two modes:
    1. Explicit mapping: env_mapping provides env var name → config key mapping
    2. Automatic mapping: {PREFIX}{CONFIG_KEY} (uppercase) overrides config_key

    Args:
        config: Configuration dictionary for one section
        env_mapping: Optional mapping of env var names to config keys
        prefix: Prefix for automatic env var names (e.g., "CROSSFILTER_BINNING_")

    Returns:
        Config with env var overrides applied
    """
    result = config.copy()
    overridden: set[str] = set()

    if env_mapping:
        for env_key, config_key in env_mapping.items():
            env_value = os.getenv(env_key)
            if env_value is None or config_key not in result:
                continue
            target_type = type(result[config_key])
            try:
                result[config_key] = _coerce_type(env_value, target_type)
                overridden.add(config_key)
            except (ValueError, TypeError) as e:
                logger.warning(f"Failed to coerce env var {env_key}={env_value} to {target_type.__name__}: {e}")

    for config_key in result.keys():
        if config_key in overridden:
            continue
        env_key = f"{prefix}{config_key}".upper()
        env_value = os.getenv(env_key)
        if env_value is None:
            continue
        target_type = type(result[config_key])
        if target_type is dict:
            # Nested values (custom thresholds) are YAML-only
            continue
        try:
            result[config_key] = _coerce_type(env_value, target_type)
        except (ValueError, TypeError) as e:
            logger.warning(f"Failed to coerce env var {env_key}={env_value} to {target_type.__name__}: {e}")

    return result


@dataclass(frozen=True)
class BinningConfig:
    """Binning parameters shared by every column unless overridden per column."""

    max_bins: int = 20
    max_ordinal_bins: int = 20
    continuous_bin_method: str = "freedman_diaconis"
    date_interval: str = "day"
    min_bin_size: int = 5
    merge_policy: str = "sequential"
    skew_ratio: float = 2.0
    max_folded_keys: int = 1000
    ordinal_distinct_threshold: int = 10
    kde_bandwidth: float = 0.0
    custom_thresholds: dict[str, list[float]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.continuous_bin_method not in VALID_BIN_METHODS:
            raise ValueError(
                f"Invalid continuous bin method '{self.continuous_bin_method}'. "
                f"Must be one of: {', '.join(VALID_BIN_METHODS)}"
            )
        if self.date_interval not in VALID_DATE_INTERVALS:
            raise ValueError(
                f"Invalid date interval '{self.date_interval}'. Must be one of: {', '.join(VALID_DATE_INTERVALS)}"
            )
        if self.merge_policy not in VALID_MERGE_POLICIES:
            raise ValueError(
                f"Invalid merge policy '{self.merge_policy}'. Must be one of: {', '.join(VALID_MERGE_POLICIES)}"
            )
        if self.max_ordinal_bins < 2:
            raise ValueError("max_ordinal_bins must be at least 2")
        if self.min_bin_size < 1:
            raise ValueError("min_bin_size must be at least 1")
        if self.max_bins < 1:
            raise ValueError("max_bins must be at least 1")
        if self.kde_bandwidth < 0:
            raise ValueError("kde_bandwidth must not be negative")

    def to_dict(self) -> dict[str, Any]:
        """Convert dataclass to dictionary."""
        return asdict(self)


@dataclass(frozen=True)
class EngineConfig:
    """Backing engine connection settings."""

    database: str = ":memory:"
    table_name: str = "dataset"
    connect_retries: int = 3
    retry_backoff_s: float = 0.5

    def __post_init__(self) -> None:
        if self.connect_retries < 1:
            raise ValueError("connect_retries must be at least 1")
        if self.retry_backoff_s < 0:
            raise ValueError("retry_backoff_s cannot be negative")

    def to_dict(self) -> dict[str, Any]:
        """Convert dataclass to dictionary."""
        return asdict(self)


@dataclass(frozen=True)
class TableConfig:
    """Sortable grid settings."""

    page_size: int = 100

    def to_dict(self) -> dict[str, Any]:
        """Convert dataclass to dictionary."""
        return asdict(self)


@dataclass(frozen=True)
class ExplorerConfig:
    """Complete explorer configuration."""

    binning: BinningConfig = field(default_factory=BinningConfig)
    engine: EngineConfig = field(default_factory=EngineConfig)
    table: TableConfig = field(default_factory=TableConfig)


# Explicit env var names kept short for the settings operators change most
_ENV_MAPPINGS: dict[str, dict[str, str]] = {
    "binning": {
        "CROSSFILTER_MAX_BINS": "max_bins",
        "CROSSFILTER_MAX_ORDINAL_BINS": "max_ordinal_bins",
        "CROSSFILTER_BIN_METHOD": "continuous_bin_method",
        "CROSSFILTER_DATE_INTERVAL": "date_interval",
        "CROSSFILTER_MIN_BIN_SIZE": "min_bin_size",
        "CROSSFILTER_MERGE_POLICY": "merge_policy",
    },
    "engine": {
        "CROSSFILTER_DATABASE": "database",
        "CROSSFILTER_CONNECT_RETRIES": "connect_retries",
        "CROSSFILTER_RETRY_BACKOFF_S": "retry_backoff_s",
    },
    "table": {
        "CROSSFILTER_PAGE_SIZE": "page_size",
    },
}


def _merge_section(defaults: dict[str, Any], yaml_section: dict[str, Any], section: str) -> dict[str, Any]:
    """Merge one YAML section into its defaults, coercing scalar types."""
    merged = defaults.copy()
    for key, value in yaml_section.items():
        if key not in defaults:
            logger.warning(f"Ignoring unknown config key '{section}.{key}'")
            continue
        target_type = type(defaults[key])
        if target_type is dict:
            if not isinstance(value, dict):
                raise ValueError(f"Config '{section}.{key}' must be a mapping, got {type(value).__name__}")
            merged[key] = {str(k): [float(t) for t in v] for k, v in value.items()}
            continue
        try:
            merged[key] = _coerce_type(value, target_type)
        except (ValueError, TypeError) as e:
            raise ValueError(
                f"Type coercion failed for config {section}.{key}={value}: "
                f"expected {target_type.__name__}, got {type(value).__name__}. Error: {e}"
            ) from e
    return merged


def load_explorer_config(config_path: Path | None = None) -> ExplorerConfig:
    """
    Load explorer config from YAML with env var overrides.

    Precedence: Environment variable → YAML value → Default value

    Args:
        config_path: Optional path to config file. If None, uses config/explorer.yaml
            under the project root.

    Returns:
        Validated ExplorerConfig

    Raises:
        ValueError: If YAML is invalid or validation fails
    """
    if config_path is None:
        config_path = get_project_root() / "config" / "explorer.yaml"

    yaml_data: dict[str, Any] = {}
    if config_path.exists():
        try:
            with open(config_path) as f:
                yaml_data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {config_path}: {e}") from e
    else:
        logger.debug(f"Config file not found at {config_path}, using defaults")

    sections: dict[str, Any] = {}
    for section, defaults_cls in (("binning", BinningConfig), ("engine", EngineConfig), ("table", TableConfig)):
        defaults = defaults_cls().to_dict()
        merged = _merge_section(defaults, yaml_data.get(section) or {}, section)
        merged = _apply_env_overrides(merged, _ENV_MAPPINGS[section], prefix=f"CROSSFILTER_{section}_")
        sections[section] = defaults_cls(**merged)

    return ExplorerConfig(**sections)
