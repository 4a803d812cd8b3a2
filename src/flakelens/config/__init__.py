"""Configuration file support for flakelens."""

from flakelens.config.loader import (
    CLIOverrides,
    ConfigLoader,
    FileConfig,
    StorageConfig,
    load_config,
)

__all__ = [
    "CLIOverrides",
    "ConfigLoader",
    "FileConfig",
    "StorageConfig",
    "load_config",
]
