"""Stable constants shared across orchestrator planes."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
KNOWLEDGE_STORE_SCHEMA_VERSION: Final[int] = 1

# Analysis phases in their default execution order.
DEFAULT_PHASE_ORDER: Final[tuple[str, ...]] = (
    "recon",
    "entrypoints",
    "inventory",
    "coupling",
    "patterns",
    "behavior",
    "critique",
)

# Budget defaults. Budget limits are measured in bytes of source material read.
DEFAULT_TASK_LIMIT_BYTES: Final[int] = 2_000_000
DEFAULT_SPLIT_FACTOR: Final[float] = 0.5
DEFAULT_MAX_CYCLE_LENGTH: Final[int] = 8

DEFAULT_CONFIG_FILE: Final[str] = "atlas.toml"
ENV_PREFIX: Final[str] = "ATLAS_"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_MAX_CYCLE_LENGTH",
    "DEFAULT_PHASE_ORDER",
    "DEFAULT_SPLIT_FACTOR",
    "DEFAULT_TASK_LIMIT_BYTES",
    "ENV_PREFIX",
    "KNOWLEDGE_STORE_SCHEMA_VERSION",
]
