"""
repo-atlas — runtime config loader.

Purpose
- Build the effective config from built-in defaults, ``atlas.toml``, the
  selected profile, ``ATLAS_*`` environment variables and CLI overrides.

Functional requirements
- Precedence, lowest to highest: defaults, file, profile, env, CLI.
- Every scalar config field ``section.key`` can be set through
  ``ATLAS_SECTION_KEY``; the value is coerced to the type of the default.
  List fields take comma-separated values.
- Relative paths resolve against the directory holding the config file.
- Fail before any scheduling happens when the effective config is invalid.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from repo_atlas.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from repo_atlas.constants import DEFAULT_CONFIG_FILE, ENV_PREFIX

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})

# Sections that cannot be set from the environment.
_ENV_EXCLUDED_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """
    Load the effective config.

    ``config_path`` defaults to ``./atlas.toml``, which may be absent; an
    explicit path must exist. ``cli_overrides`` maps dotted field paths
    (``"orchestration.concurrency_limit"``) to values, plus an optional
    ``"profile"`` entry.
    """
    if config_path is None:
        source = (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    else:
        source = Path(config_path).expanduser().resolve()
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    selected = _select_profile(profile, overrides.pop("profile", None), env)

    from_file = _read_toml(source, required=config_path is not None)
    config = assert_valid_config(merge_config(default_config(), from_file))
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, _env_overrides(config, env))
    config = merge_config(config, _nest(overrides))
    config = assert_valid_config(config, active_profile=selected)
    return normalize_paths(config, base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Return a copy of ``config`` with every path field anchored at ``base_dir``."""
    normalized = merge_config({}, config)
    for field_path in PATH_FIELDS:
        *parents, leaf = field_path
        table: object = normalized
        for part in parents:
            table = table.get(part) if isinstance(table, dict) else None
        if isinstance(table, dict) and isinstance(table.get(leaf), str):
            table[leaf] = _anchor(table[leaf], base_dir)
    return normalized


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Redacted, key-sorted JSON rendering of ``config``."""
    return json.dumps(redact_config(config), sort_keys=True, indent=2, ensure_ascii=False)


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None,
    from_cli: object,
    environ: Mapping[str, str],
) -> str | None:
    if from_cli is not None and not isinstance(from_cli, str):
        raise ConfigLoadError("cli override 'profile' must be a string")
    for candidate in (explicit, from_cli, environ.get(f"{ENV_PREFIX}PROFILE")):
        if candidate is not None:
            return candidate.strip() or None
    return None


def _leaves(
    table: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(table):
        value = table[key]
        if isinstance(value, Mapping):
            yield from _leaves(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _env_overrides(config: Mapping[str, object], environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for path, default in _leaves(config):
        if path[0] in _ENV_EXCLUDED_SECTIONS:
            continue
        name = ENV_PREFIX + "_".join(path).upper()
        raw = environ.get(name)
        if raw is not None:
            _assign(overrides, path, _coerce(raw.strip(), default, f"{name} -> {'.'.join(path)}"))
    return overrides


def _coerce(raw: str, default: object, label: str) -> object:
    # bool before int: bool is an int subclass.
    if isinstance(default, bool):
        lowered = raw.lower()
        if lowered in _TRUTHY or lowered in _FALSY:
            return lowered in _TRUTHY
        raise ConfigLoadError(f"{label} must be a boolean (true/false/1/0/yes/no/on/off)")
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{label} must be an integer") from exc
    if isinstance(default, float):
        try:
            return float(raw)
        except ValueError as exc:
            raise ConfigLoadError(f"{label} must be a number") from exc
    if isinstance(default, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def _nest(dotted: Mapping[str, object]) -> dict[str, Any]:
    nested: dict[str, Any] = {}
    for key in sorted(dotted):
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        _assign(nested, path, dotted[key])
    return nested


def _assign(target: dict[str, Any], path: tuple[str, ...], value: object) -> None:
    for part in path[:-1]:
        target = target.setdefault(part, {})
    target[path[-1]] = value


def _anchor(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
