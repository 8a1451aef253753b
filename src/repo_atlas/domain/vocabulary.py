"""Attribute names and entity kinds shared by workers and the synthesizer."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

# Component attributes.
KIND: Final[str] = "kind"
LANGUAGE: Final[str] = "language"
SIZE_BYTES: Final[str] = "size_bytes"
MODULES: Final[str] = "modules"
COMPONENT: Final[str] = "component"
ENTRYPOINT: Final[str] = "entrypoint"
PARSE_ERROR: Final[str] = "parse_error"

# Coupling edge attributes.
IMPORTS: Final[str] = "imports"
SOURCE_COMPONENT: Final[str] = "source_component"

# Pattern instance attributes.
PATTERN: Final[str] = "pattern"

# Inferred structure metrics.
FAN_IN: Final[str] = "fan_in"
FAN_OUT: Final[str] = "fan_out"
IN_CYCLE: Final[str] = "in_cycle"

KIND_FILE: Final[str] = "file"
KIND_DIRECTORY: Final[str] = "directory"

ROOT_COMPONENT: Final[str] = "."


def directory_of(path: str) -> str:
    """Component key of the directory holding ``path`` (``"."`` at the root)."""
    parent = PurePosixPath(path).parent.as_posix()
    return ROOT_COMPONENT if parent in {"", "."} else parent


__all__ = [
    "COMPONENT",
    "ENTRYPOINT",
    "FAN_IN",
    "FAN_OUT",
    "IMPORTS",
    "IN_CYCLE",
    "KIND",
    "KIND_DIRECTORY",
    "KIND_FILE",
    "LANGUAGE",
    "MODULES",
    "PARSE_ERROR",
    "PATTERN",
    "ROOT_COMPONENT",
    "SIZE_BYTES",
    "SOURCE_COMPONENT",
    "directory_of",
]
