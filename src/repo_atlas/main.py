"""Process entrypoint for ``repo-atlas`` and ``python -m repo_atlas``."""

from __future__ import annotations

import sys
import traceback
from collections.abc import Iterator
from enum import IntEnum
from typing import TYPE_CHECKING

from repo_atlas.config.loader import ConfigLoadError
from repo_atlas.config.schema import ConfigValidationError

if TYPE_CHECKING:
    from collections.abc import Sequence

# Errors the operator can fix by changing arguments or config.
_OPERATOR_ERRORS: tuple[type[BaseException], ...] = (
    ConfigLoadError,
    ConfigValidationError,
    FileNotFoundError,
    NotADirectoryError,
    PermissionError,
)


class ExitCode(IntEnum):
    SUCCESS = 0
    UNRESOLVED_SCOPES = 1
    CONFIG_ERROR = 2
    INTERNAL_ERROR = 4


def cli_entrypoint(argv: Sequence[str] | None = None) -> int:
    """Run the CLI and map its outcome onto :class:`ExitCode`."""
    try:
        from repo_atlas.ui.cli import run_cli

        return _exit_status(run_cli(argv))
    except SystemExit as exc:
        return _exit_status(exc.code)
    except Exception as exc:
        if any(isinstance(link, _OPERATOR_ERRORS) for link in _causes(exc)):
            sys.stderr.write(f"{str(exc).strip() or type(exc).__name__}\n")
            return ExitCode.CONFIG_ERROR.value
        traceback.print_exception(exc, file=sys.stderr)
        return ExitCode.INTERNAL_ERROR.value


def _exit_status(code: object) -> int:
    if code is None:
        return ExitCode.SUCCESS.value
    if isinstance(code, int) and code in set(ExitCode):
        return code
    if isinstance(code, str) and code.strip():
        sys.stderr.write(code.strip() + "\n")
    return ExitCode.INTERNAL_ERROR.value


def _causes(exc: BaseException) -> Iterator[BaseException]:
    """``exc`` followed by its explicit causes and unsuppressed contexts."""
    seen: set[int] = set()
    link: BaseException | None = exc
    while link is not None and id(link) not in seen:
        seen.add(id(link))
        yield link
        if link.__cause__ is not None or link.__suppress_context__:
            link = link.__cause__
        else:
            link = link.__context__


__all__ = ["ExitCode", "cli_entrypoint"]
