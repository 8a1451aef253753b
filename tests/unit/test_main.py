"""Exit-code contract of the process entrypoint."""

from __future__ import annotations

import pytest

import repo_atlas.ui.cli as cli_module
from repo_atlas.config.loader import ConfigLoadError
from repo_atlas.main import ExitCode, cli_entrypoint


def test_help_exits_successfully(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["--help"]) == ExitCode.SUCCESS
    assert "repo-atlas analyze ." in capsys.readouterr().out


def test_unknown_command_is_a_usage_error(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_entrypoint(["explode"]) == ExitCode.CONFIG_ERROR
    assert "invalid choice" in capsys.readouterr().err


def test_config_errors_raised_past_the_router_map_to_two(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def _raise(argv: object = None) -> int:
        raise ConfigLoadError("config file not found: /nowhere/atlas.toml")

    monkeypatch.setattr(cli_module, "run_cli", _raise)

    assert cli_entrypoint(["config"]) == ExitCode.CONFIG_ERROR
    assert capsys.readouterr().err == "config file not found: /nowhere/atlas.toml\n"


def test_chained_filesystem_errors_map_to_two(monkeypatch: pytest.MonkeyPatch) -> None:
    def _raise(argv: object = None) -> int:
        try:
            raise FileNotFoundError("repo vanished")
        except FileNotFoundError as exc:
            raise RuntimeError("scan failed") from exc

    monkeypatch.setattr(cli_module, "run_cli", _raise)

    assert cli_entrypoint([]) == ExitCode.CONFIG_ERROR


def test_unexpected_errors_map_to_internal_error(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def _raise(argv: object = None) -> int:
        raise RuntimeError("scheduler exploded")

    monkeypatch.setattr(cli_module, "run_cli", _raise)

    assert cli_entrypoint([]) == ExitCode.INTERNAL_ERROR
    assert "RuntimeError: scheduler exploded" in capsys.readouterr().err


@pytest.mark.parametrize(
    ("raw", "expected"),
    [(0, 0), (1, 1), (2, 2), (4, 4), (7, 4), (None, 0), ("boom", 4)],
)
def test_unknown_exit_codes_are_normalized(
    monkeypatch: pytest.MonkeyPatch, raw: object, expected: int
) -> None:
    monkeypatch.setattr(cli_module, "run_cli", lambda argv=None: raw)

    assert cli_entrypoint([]) == expected
