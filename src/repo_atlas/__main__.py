"""Module entrypoint for ``python -m repo_atlas``."""

from __future__ import annotations

from repo_atlas.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
