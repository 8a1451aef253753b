"""Configuration for repo-atlas: ``atlas.toml`` + ``ATLAS_`` env overrides, strictly validated."""

from repo_atlas.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from repo_atlas.config.schema import (
    DEFAULT_CONFIG,
    AtlasConfig,
    ConfigValidationError,
    ConfigValidationIssue,
    OrchestrationSettings,
    default_config,
    redact_config,
    validate_config,
)

__all__ = [
    "AtlasConfig",
    "ConfigLoadError",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "OrchestrationSettings",
    "default_config",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
