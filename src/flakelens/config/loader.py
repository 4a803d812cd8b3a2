"""Configuration file loader.

Handles discovery, parsing, and merging of YAML configuration files.
"""

import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from flakelens.exceptions import ConfigurationError
from flakelens.models.config import ClassifierConfig, GateConfig, RetentionPolicy

# Pattern matches ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([^}:-]+)(?::-([^}]*))?\}")

# Default config file names in priority order
CONFIG_FILE_NAMES = ["flakelens.yaml", ".flakelens.yaml", "flakelens.yml", ".flakelens.yml"]

DEFAULT_RESULTS_DIR = "flake-results"


class StorageConfig(BaseModel):
    """Configuration for the run archive."""

    persist: bool = True
    dir: str = DEFAULT_RESULTS_DIR


class CLIOverrides(BaseModel):
    """CLI argument overrides for configuration.

    All fields are optional - only set values will override config file settings.
    """

    window_size: int | None = None
    min_runs: int | None = None
    flaky_threshold: float | None = None
    failing_streak: int | None = None


class FileConfig(BaseModel):
    """Schema for flakelens.yaml configuration file."""

    classifier: ClassifierConfig = Field(default_factory=ClassifierConfig)
    retention: RetentionPolicy = Field(default_factory=RetentionPolicy)
    gate: GateConfig = Field(default_factory=GateConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    quarantine: list[str] = Field(default_factory=list)
    log_level: str = "WARNING"


class ConfigLoader:
    """Load and merge configuration from files and CLI arguments."""

    @staticmethod
    def discover_config_file(explicit_path: Path | None = None) -> Path | None:
        """Find configuration file in priority order.

        Args:
            explicit_path: Explicitly provided config file path.

        Returns:
            Path to config file, or None if not found.

        Raises:
            ConfigurationError: If explicit path doesn't exist.
        """
        if explicit_path is not None:
            if not explicit_path.exists():
                msg = f"Configuration file not found: {explicit_path}"
                raise ConfigurationError(msg)
            return explicit_path

        cwd = Path.cwd()
        for filename in CONFIG_FILE_NAMES:
            config_path = cwd / filename
            if config_path.exists():
                return config_path

        return None

    @staticmethod
    def load_yaml(path: Path) -> dict[str, Any]:
        """Load and parse YAML configuration file.

        Args:
            path: Path to YAML file.

        Returns:
            Parsed configuration dictionary.

        Raises:
            ConfigurationError: If file cannot be read or parsed.
        """
        try:
            with path.open() as f:
                content = yaml.safe_load(f)
        except yaml.YAMLError as e:
            msg = f"Failed to parse configuration file {path}: {e}"
            raise ConfigurationError(msg) from e
        except OSError as e:
            msg = f"Failed to read configuration file {path}: {e}"
            raise ConfigurationError(msg) from e
        if content is None:
            return {}
        if not isinstance(content, dict):
            msg = f"Configuration file {path} must contain a mapping"
            raise ConfigurationError(msg)
        return content

    @staticmethod
    def interpolate_env_vars(value: Any) -> Any:
        """Recursively interpolate environment variables in configuration.

        Supports two syntaxes:
        - ${VAR} - Required variable, raises error if not set
        - ${VAR:-default} - Optional variable with default value

        Args:
            value: Configuration value (string, dict, list, or other).

        Returns:
            Value with environment variables interpolated.

        Raises:
            ConfigurationError: If required environment variable is not set.
        """
        if isinstance(value, str):

            def replace(match: re.Match[str]) -> str:
                var_name = match.group(1)
                default_value = match.group(2)
                env_value = os.environ.get(var_name)
                if env_value is not None:
                    return env_value
                if default_value is not None:
                    return default_value
                msg = f"Environment variable {var_name} is not set"
                raise ConfigurationError(msg)

            return ENV_VAR_PATTERN.sub(replace, value)
        elif isinstance(value, dict):
            return {k: ConfigLoader.interpolate_env_vars(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [ConfigLoader.interpolate_env_vars(item) for item in value]
        return value

    @staticmethod
    def load_config(explicit_path: Path | None = None) -> FileConfig | None:
        """Discover, load, and parse configuration file.

        Args:
            explicit_path: Explicitly provided config file path.

        Returns:
            Parsed FileConfig, or None if no config file found.

        Raises:
            ConfigurationError: If config file exists but is invalid.
        """
        config_path = ConfigLoader.discover_config_file(explicit_path)
        if config_path is None:
            return None

        raw_config = ConfigLoader.load_yaml(config_path)
        interpolated = ConfigLoader.interpolate_env_vars(raw_config)

        try:
            return FileConfig.model_validate(interpolated)
        except Exception as e:
            msg = f"Invalid configuration in {config_path}: {e}"
            raise ConfigurationError(msg) from e

    @staticmethod
    def resolve_classifier_config(
        file_config: FileConfig | None,
        cli_overrides: CLIOverrides | None = None,
    ) -> ClassifierConfig:
        """Resolve classifier configuration.

        Priority order (highest to lowest):
        1. CLI arguments (via cli_overrides)
        2. classifier: section of the config file
        3. Defaults

        Raises:
            ConfigurationError: If the merged values are inconsistent.
        """
        values = (
            file_config.classifier.model_dump() if file_config else ClassifierConfig().model_dump()
        )
        if cli_overrides:
            values.update(cli_overrides.model_dump(exclude_none=True))
        try:
            return ClassifierConfig.model_validate(values)
        except ValueError as e:
            msg = f"Invalid classifier settings: {e}"
            raise ConfigurationError(msg) from e

    @staticmethod
    def resolve_storage_config(
        file_config: FileConfig | None,
        *,
        cli_persist: bool | None = None,
        cli_dir: str | None = None,
    ) -> StorageConfig:
        """Resolve run archive configuration.

        Args:
            file_config: Parsed configuration file, or None.
            cli_persist: CLI persist override.
            cli_dir: CLI results directory override.

        Returns:
            Resolved StorageConfig.
        """
        persist = True
        results_dir = DEFAULT_RESULTS_DIR

        if file_config:
            persist = file_config.storage.persist
            results_dir = file_config.storage.dir

        if cli_persist is not None:
            persist = cli_persist
        if cli_dir is not None:
            results_dir = cli_dir

        return StorageConfig(persist=persist, dir=results_dir)

    @staticmethod
    def resolve_retention_policy(
        file_config: FileConfig | None,
        *,
        cli_max_age_days: float | None = None,
        cli_stale_after_runs: int | None = None,
    ) -> RetentionPolicy:
        """Resolve retention policy, CLI values taking precedence."""
        policy = file_config.retention if file_config else RetentionPolicy()
        update: dict[str, Any] = {}
        if cli_max_age_days is not None:
            update["max_age_days"] = cli_max_age_days
        if cli_stale_after_runs is not None:
            update["stale_after_runs"] = cli_stale_after_runs
        if not update:
            return policy
        try:
            return RetentionPolicy.model_validate({**policy.model_dump(), **update})
        except ValueError as e:
            msg = f"Invalid retention settings: {e}"
            raise ConfigurationError(msg) from e


def load_config(explicit_path: Path | None = None) -> FileConfig | None:
    """Convenience function to load configuration.

    Args:
        explicit_path: Explicitly provided config file path.

    Returns:
        Parsed FileConfig, or None if no config file found.
    """
    return ConfigLoader.load_config(explicit_path)
