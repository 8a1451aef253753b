"""User-facing command-line surface."""

from repo_atlas.ui.cli import CLIError, build_parser, run_cli
from repo_atlas.ui.render import CLIRenderer, OutputFormat, create_renderer, serialize

__all__ = [
    "CLIError",
    "CLIRenderer",
    "OutputFormat",
    "build_parser",
    "create_renderer",
    "run_cli",
    "serialize",
]
