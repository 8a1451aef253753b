"""Output rendering for the repo-atlas CLI.

Purpose
- Provide a thin plain-text rendering layer for run summaries.
- Serialize machine-readable payloads as JSON or YAML.

Non-functional requirements
- Output is deterministic: keys are sorted, lists keep the order they arrive in.
"""

from __future__ import annotations

import json
import os
import sys
from collections.abc import Mapping, Sequence
from enum import StrEnum

import yaml


class OutputFormat(StrEnum):
    TEXT = "text"
    JSON = "json"
    YAML = "yaml"


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer. Respects ``NO_COLOR`` and ``--no-color``."""

    def __init__(self, *, no_color: bool = False) -> None:
        self._color = _color_allowed(no_color)

    def kv(self, key: str, value: object) -> None:
        print(f"{key}: {value}")

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""
        print(f"\n{self._bold(title)}")

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            print(f"  {prefix}{entry}")

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[object]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a formatted ASCII table; nothing at all when ``rows`` is empty."""
        if not rows:
            return

        widths = [len(header) for header in headers]
        for row in rows:
            for index in range(min(len(row), len(headers))):
                widths[index] = max(widths[index], len(str(row[index])))

        def _pad(cells: Sequence[object]) -> str:
            parts = [
                (str(cells[index]) if index < len(cells) else "").ljust(widths[index])
                for index in range(len(headers))
            ]
            return "  ".join(parts).rstrip()

        if title:
            self.section(title)
        print(f"  {_pad(list(headers))}")
        print(f"  {'  '.join('-' * width for width in widths)}")
        for row in rows:
            print(f"  {_pad(list(row))}")

    def _bold(self, text: str) -> str:
        return f"\033[1m{text}\033[0m" if self._color else text


def create_renderer(*, no_color: bool = False) -> CLIRenderer:
    return CLIRenderer(no_color=no_color)


def serialize(payload: Mapping[str, object], output_format: OutputFormat) -> str:
    """Render ``payload`` as JSON or YAML text ending in a newline."""
    if output_format is OutputFormat.JSON:
        return json.dumps(payload, sort_keys=True, indent=2, ensure_ascii=False) + "\n"
    if output_format is OutputFormat.YAML:
        return yaml.safe_dump(
            _plain(payload), sort_keys=True, allow_unicode=True, default_flow_style=False
        )
    raise ValueError(f"{output_format.value!r} is not a serialization format")


def _plain(value: object) -> object:
    # safe_dump refuses tuples and str subclasses such as StrEnum members.
    if isinstance(value, Mapping):
        return {str(key): _plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_plain(item) for item in value]
    if isinstance(value, str):
        return str(value)
    return value


__all__ = ["CLIRenderer", "OutputFormat", "create_renderer", "serialize"]
