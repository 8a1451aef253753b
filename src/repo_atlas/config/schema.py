"""
repo-atlas — configuration schema and validation.

Purpose
- Define the built-in defaults for every ``atlas.toml`` section.
- Validate a config payload field by field against a declarative rule table.
- Expose the typed ``OrchestrationSettings`` view the run coordinator consumes.

Functional requirements
- Report every problem at once as structured issues (dotted field path + message).
- Reject unusable orchestration settings (for example ``concurrency_limit < 1``)
  before any task is scheduled.
- Profiles are partial overlays validated with the same field rules.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from repo_atlas.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_MAX_CYCLE_LENGTH,
    DEFAULT_PHASE_ORDER,
    DEFAULT_SPLIT_FACTOR,
    DEFAULT_TASK_LIMIT_BYTES,
)
from repo_atlas.domain.models import Phase

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

# Config fields holding filesystem paths; the loader anchors them at the config file.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)

REDACTED: Final[str] = "<redacted>"

_LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
_PROFILE_NAME = re.compile(r"[a-z][a-z0-9_-]*")
_SENSITIVE_KEY = re.compile(
    r"secret|token|passw(?:or)?d|api_?key|private_?key|credential", re.IGNORECASE
)


class OrchestrationConfig(TypedDict):
    concurrency_limit: int
    retry_limit: int
    phase_order: list[str]


class BudgetsConfig(TypedDict):
    limit_bytes: int
    deadline_seconds: float
    split_factor: float


class ScanConfig(TypedDict):
    exclude_dirs: list[str]
    max_file_bytes: int


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool


class AtlasConfig(TypedDict):
    meta: dict[str, int]
    orchestration: OrchestrationConfig
    budgets: BudgetsConfig
    synthesis: dict[str, int]
    scan: ScanConfig
    observability: ObservabilityConfig
    profiles: dict[str, dict[str, dict[str, object]]]


DEFAULT_CONFIG: Final[AtlasConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "orchestration": {
        "concurrency_limit": 4,
        "retry_limit": 2,
        "phase_order": list(DEFAULT_PHASE_ORDER),
    },
    "budgets": {
        "limit_bytes": DEFAULT_TASK_LIMIT_BYTES,
        # 0 disables the per-task deadline.
        "deadline_seconds": 0.0,
        "split_factor": DEFAULT_SPLIT_FACTOR,
    },
    "synthesis": {"max_cycle_length": DEFAULT_MAX_CYCLE_LENGTH},
    "scan": {
        "exclude_dirs": [
            ".atlas",
            ".git",
            ".hg",
            ".mypy_cache",
            ".pytest_cache",
            ".ruff_cache",
            ".svn",
            ".tox",
            ".venv",
            "__pycache__",
            "build",
            "dist",
            "node_modules",
            "target",
            "venv",
        ],
        "max_file_bytes": 1_000_000,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": ".atlas/logs",
        "log_to_stdout": False,
    },
    "profiles": {
        "fast": {
            "orchestration": {"concurrency_limit": 8, "retry_limit": 0},
            "budgets": {"limit_bytes": 8_000_000},
        },
        "thorough": {
            "orchestration": {"retry_limit": 4},
            "budgets": {"limit_bytes": 500_000},
            "synthesis": {"max_cycle_length": 16},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Rejected(Exception):
    """Carries the message for one field that failed its rule."""


_Rule = Callable[[object], object]


def _type_name(value: object) -> str:
    return type(value).__name__


def _integer(minimum: int) -> Callable[[object], int]:
    def rule(value: object) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Rejected(f"expected integer, got {_type_name(value)}")
        if value < minimum:
            raise _Rejected(f"must be >= {minimum}")
        return value

    return rule


def _number(value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise _Rejected(f"expected number, got {_type_name(value)}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise _Rejected("must be finite")
    if parsed < 0:
        raise _Rejected("must be >= 0")
    return parsed


def _fraction(value: object) -> float:
    parsed = _number(value)
    if not 0.0 < parsed < 1.0:
        raise _Rejected("must be between 0 and 1 (exclusive)")
    return parsed


def _flag(value: object) -> bool:
    if not isinstance(value, bool):
        raise _Rejected(f"expected boolean, got {_type_name(value)}")
    return value


def _text(value: object) -> str:
    if not isinstance(value, str):
        raise _Rejected(f"expected string, got {_type_name(value)}")
    stripped = value.strip()
    if not stripped:
        raise _Rejected("must not be empty")
    if "\x00" in stripped:
        raise _Rejected("must not contain NUL bytes")
    return stripped


def _text_list(value: object) -> list[str]:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise _Rejected(f"expected array of strings, got {_type_name(value)}")
    items: list[str] = []
    for index, item in enumerate(value):
        try:
            items.append(_text(item))
        except _Rejected as exc:
            raise _Rejected(f"[{index}] {exc}") from None
    return items


def _log_level(value: object) -> str:
    level = _text(value)
    if level not in _LOG_LEVELS:
        raise _Rejected(f"invalid value {level!r}; expected one of: {', '.join(_LOG_LEVELS)}")
    return level


def _phase_order(value: object) -> list[str]:
    names = _text_list(value)
    if not names:
        raise _Rejected("must name at least one phase")
    known = [phase.value for phase in Phase]
    unknown = [name for name in names if name not in known]
    if unknown:
        raise _Rejected(f"unknown phases {unknown}; expected any of: {', '.join(known)}")
    if len(set(names)) != len(names):
        raise _Rejected("must not repeat a phase")
    return names


def _exclude_dirs(value: object) -> list[str]:
    names = _text_list(value)
    bad = [name for name in names if "/" in name or name in {".", ".."}]
    if bad:
        raise _Rejected(f"entries must be plain directory names, got {bad}")
    return sorted(set(names))


def _schema_version(value: object) -> int:
    version = _integer(1)(value)
    if version != ConfigSchemaVersion:
        raise _Rejected(migration_guidance(version))
    return version


_SCHEMA: Final[dict[str, dict[str, _Rule]]] = {
    "meta": {"schema_version": _schema_version},
    "orchestration": {
        "concurrency_limit": _integer(1),
        "retry_limit": _integer(0),
        "phase_order": _phase_order,
    },
    "budgets": {
        "limit_bytes": _integer(1),
        "deadline_seconds": _number,
        "split_factor": _fraction,
    },
    "synthesis": {"max_cycle_length": _integer(2)},
    "scan": {"exclude_dirs": _exclude_dirs, "max_file_bytes": _integer(1)},
    "observability": {"log_level": _log_level, "log_dir": _text, "log_to_stdout": _flag},
}

# Sections a profile may overlay.
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(name for name in _SCHEMA if name != "meta")


class _Issues(list[ConfigValidationIssue]):
    def add(self, path: str, message: str) -> None:
        self.append(ConfigValidationIssue(path=path, message=message))


@dataclass(frozen=True, slots=True)
class OrchestrationSettings:
    """Typed, validated view of the settings the run coordinator consumes."""

    concurrency_limit: int = 4
    retry_limit: int = 2
    phase_order: tuple[Phase, ...] = tuple(Phase)
    limit_bytes: int = DEFAULT_TASK_LIMIT_BYTES
    deadline_seconds: float | None = None
    split_factor: float = DEFAULT_SPLIT_FACTOR
    max_cycle_length: int = DEFAULT_MAX_CYCLE_LENGTH

    def __post_init__(self) -> None:
        issues = _Issues()
        sections: dict[str, dict[str, object]] = {
            "orchestration": {
                "concurrency_limit": self.concurrency_limit,
                "retry_limit": self.retry_limit,
                "phase_order": [str(phase) for phase in self.phase_order],
            },
            "budgets": {
                "limit_bytes": self.limit_bytes,
                "deadline_seconds": self.deadline_seconds or 0.0,
                "split_factor": self.split_factor,
            },
            "synthesis": {"max_cycle_length": self.max_cycle_length},
        }
        for name, payload in sections.items():
            _check_section(name, payload, name, issues, partial=True)
        if issues:
            raise ConfigValidationError(issues)
        object.__setattr__(self, "phase_order", tuple(Phase(item) for item in self.phase_order))
        if self.deadline_seconds is not None and self.deadline_seconds <= 0:
            object.__setattr__(self, "deadline_seconds", None)

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> OrchestrationSettings:
        validated = assert_valid_config(config)
        orchestration = validated["orchestration"]
        budgets = validated["budgets"]
        return cls(
            concurrency_limit=orchestration["concurrency_limit"],
            retry_limit=orchestration["retry_limit"],
            phase_order=tuple(Phase(item) for item in orchestration["phase_order"]),
            limit_bytes=budgets["limit_bytes"],
            deadline_seconds=budgets["deadline_seconds"] or None,
            split_factor=budgets["split_factor"],
            max_cycle_length=validated["synthesis"]["max_cycle_length"],
        )


def default_config() -> AtlasConfig:
    """Return a deep copy of the built-in defaults."""
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade atlas.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the repo-atlas runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; nested tables merge, other values replace."""
    merged: dict[str, Any] = _plain(base)
    for key in sorted(overlay):
        incoming = overlay[key]
        current = merged.get(key)
        if isinstance(incoming, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, incoming)
        else:
            merged[key] = _plain(incoming)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply the named profile overlay and re-validate the result."""
    selected = (profile or "").strip()
    if not selected:
        return _plain(config)

    profiles = config.get("profiles")
    overlay = profiles.get(selected) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError(
            [ConfigValidationIssue("profiles", f"profile {selected!r} is not defined")]
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate a full config and collect every issue with its dotted path."""
    issues = _Issues()
    if not isinstance(config, Mapping):
        issues.add("<root>", f"expected object, got {_type_name(config)}")
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized: dict[str, Any] = {}
    for key in sorted(config):
        if key not in _SCHEMA and key != "profiles":
            issues.add(key, _unknown_field_message(key))
    for name in _SCHEMA:
        section = config.get(name)
        if section is None:
            issues.add(name, "missing required field")
        elif not isinstance(section, Mapping):
            issues.add(name, f"expected object, got {_type_name(section)}")
        else:
            normalized[name] = _check_section(name, section, name, issues, partial=False)

    profiles = config.get("profiles")
    if profiles is not None:
        normalized["profiles"] = _check_profiles(profiles, issues)

    selected = (active_profile or "").strip()
    if selected and selected not in normalized.get("profiles", {}):
        issues.add("profiles", f"profile {selected!r} is not defined")

    if issues:
        return ConfigValidationResult(config=None, issues=tuple(issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy ``config`` with sorted keys and sensitive-looking values masked."""
    if not isinstance(config, Mapping):
        return {}
    return {
        key: REDACTED if _SENSITIVE_KEY.search(key) else _redact(config[key])
        for key in sorted(config)
    }


def _check_section(
    name: str,
    payload: Mapping[str, object],
    path: str,
    issues: _Issues,
    *,
    partial: bool,
) -> dict[str, Any]:
    rules = _SCHEMA[name]
    keys = set(payload) if partial else set(payload) | set(rules)
    out: dict[str, Any] = {}
    for key in sorted(keys):
        field_path = f"{path}.{key}"
        if key not in rules:
            issues.add(field_path, _unknown_field_message(key))
        elif key not in payload:
            issues.add(field_path, "missing required field")
        else:
            try:
                out[key] = rules[key](payload[key])
            except _Rejected as exc:
                issues.add(field_path, str(exc))
    return out


def _check_profiles(profiles: object, issues: _Issues) -> dict[str, Any]:
    if not isinstance(profiles, Mapping):
        issues.add("profiles", f"expected object, got {_type_name(profiles)}")
        return {}
    out: dict[str, Any] = {}
    for name in sorted(profiles):
        path = f"profiles.{name}"
        overlay = profiles[name]
        if not _PROFILE_NAME.fullmatch(name):
            issues.add(path, f"profile name must match {_PROFILE_NAME.pattern}")
            continue
        if not isinstance(overlay, Mapping):
            issues.add(path, f"expected object, got {_type_name(overlay)}")
            continue
        checked: dict[str, Any] = {}
        for section in sorted(overlay):
            section_path = f"{path}.{section}"
            payload = overlay[section]
            if section not in _OVERLAY_SECTIONS:
                issues.add(section_path, _unknown_field_message(section))
            elif not isinstance(payload, Mapping):
                issues.add(section_path, f"expected object, got {_type_name(payload)}")
            else:
                checked[section] = _check_section(
                    section, payload, section_path, issues, partial=True
                )
        out[name] = checked
    return out


def _unknown_field_message(key: str) -> str:
    if _SENSITIVE_KEY.search(key):
        return "embedded secret values are forbidden in atlas config"
    return "unknown field"


def _plain(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _plain(value[key]) for key in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    return copy.deepcopy(value)


def _redact(value: object) -> object:
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "AtlasConfig",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "OrchestrationSettings",
    "PATH_FIELDS",
    "REDACTED",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
