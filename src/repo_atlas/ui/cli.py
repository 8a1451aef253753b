"""Command-line interface router for repo-atlas."""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from repo_atlas.config import (
    ConfigLoadError,
    ConfigValidationError,
    OrchestrationSettings,
    load_config,
    redact_config,
)
from repo_atlas.control_plane import RunCoordinator, RunResult
from repo_atlas.domain.ids import generate_run_id
from repo_atlas.domain.models import Phase
from repo_atlas.knowledge_plane import (
    FilesystemScopeProvider,
    KnowledgeStore,
    ScanExcludes,
    StoreLoadError,
)
from repo_atlas.observability import setup_logging
from repo_atlas.ui.render import CLIRenderer, OutputFormat, create_renderer, serialize
from repo_atlas.utils.fs import atomic_write


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = 1

    def __str__(self) -> str:
        return self.message


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="repo-atlas",
        description=(
            "repo-atlas — incremental, budgeted codebase analysis.\n\n"
            "Common workflows:\n"
            "  repo-atlas analyze .                 Analyze the current repository\n"
            "  repo-atlas analyze . --format yaml   Dump the knowledge graph as YAML\n"
            "  repo-atlas config                    Show the effective configuration\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to atlas TOML config (default: ./atlas.toml if present).",
    )
    common.add_argument("--profile", default=None, help="Optional config profile overlay name.")
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    analyze_parser = subparsers.add_parser(
        "analyze",
        parents=[common],
        help="Run every analysis phase over a repository",
        description="Analyze ROOT phase by phase and report the knowledge graph.",
    )
    analyze_parser.add_argument("root", help="Repository root directory to analyze")
    analyze_parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Override orchestration.concurrency_limit.",
    )
    analyze_parser.add_argument(
        "--format",
        dest="output_format",
        choices=[item.value for item in OutputFormat],
        default=OutputFormat.TEXT.value,
        help="Output format (default: text summary).",
    )
    analyze_parser.add_argument(
        "--output",
        default=None,
        help="Write the JSON/YAML report to this path instead of stdout.",
    )
    analyze_parser.add_argument(
        "--state",
        default=None,
        help="Knowledge store file; loaded when present and saved after the run.",
    )
    analyze_parser.set_defaults(handler=_cmd_analyze)

    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the redacted effective configuration",
    )
    config_parser.add_argument(
        "--format",
        dest="output_format",
        choices=[OutputFormat.JSON.value, OutputFormat.YAML.value],
        default=OutputFormat.JSON.value,
    )
    config_parser.set_defaults(handler=_cmd_config)
    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""
    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_analyze(args: argparse.Namespace) -> int:
    root = _repo_root(args.root)
    overrides: dict[str, object] = {}
    if args.concurrency is not None:
        overrides["orchestration.concurrency_limit"] = args.concurrency
    config = _load_effective_config(args, overrides)
    settings = OrchestrationSettings.from_config(config)

    state_path = Path(args.state).expanduser().resolve() if args.state else None
    store = _load_store(state_path)
    previous_roots = store.root_task_ids() if store is not None else ()

    scan = config["scan"]
    provider = FilesystemScopeProvider(
        root,
        excludes=ScanExcludes.from_config(scan),
        max_file_bytes=int(scan["max_file_bytes"]),
    )
    run_id = generate_run_id()
    handle = setup_logging(config["observability"], run_id=run_id)
    try:
        coordinator = RunCoordinator(provider, settings=settings, store=store)
        result = asyncio.run(
            coordinator.run(
                rescan_of=previous_roots[-1] if previous_roots else None,
                run_id=run_id,
            )
        )
        if state_path is not None:
            coordinator.store.save(state_path)
        if handle.log_path is not None:
            coordinator.metrics.export_json(handle.log_path.with_name("metrics.json"))
    finally:
        handle.shutdown()

    exit_code = 0 if result.complete else 1
    output_format = OutputFormat(args.output_format)
    if output_format is OutputFormat.TEXT:
        _render_summary(create_renderer(no_color=args.no_color), result, root)
        return exit_code

    text = serialize(result.to_dict(), output_format)
    if args.output:
        atomic_write(Path(args.output).expanduser(), text, encoding="utf-8")
    else:
        sys.stdout.write(text)
    return exit_code


def _cmd_config(args: argparse.Namespace) -> int:
    config = _load_effective_config(args, {})
    payload = {"active_profile": args.profile, "config": redact_config(config)}
    sys.stdout.write(serialize(payload, OutputFormat(args.output_format)))
    return 0


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _render_summary(renderer: CLIRenderer, result: RunResult, root: Path) -> None:
    renderer.kv("Run ID", result.run_id)
    renderer.kv("Root", root.as_posix())
    renderer.kv("Status", "complete" if result.complete else "incomplete")
    renderer.kv("Entities", len(result.graph))
    renderer.kv("Open conflicts", len(result.graph.open_conflicts()))
    counts = sorted(result.task_counts.items())
    renderer.kv("Tasks", ", ".join(f"{status}={count}" for status, count in counts if count))

    recon = result.phase_outputs.get(Phase.RECON)
    if recon is not None:
        languages = recon.views.get("languages", {})
        renderer.table(
            ("language", "files"),
            [(language, count) for language, count in languages.items()],
            title="Languages:",
        )
    coupling = result.phase_outputs.get(Phase.COUPLING)
    if coupling is not None and coupling.views.get("cycles"):
        renderer.section("Coupling cycles:")
        renderer.items([" -> ".join(cycle) for cycle in coupling.views["cycles"]])
    if result.unresolved:
        renderer.section("Unresolved scopes:")
        renderer.items(
            [
                f"{item.task_id} [{item.phase.value}] {item.scope_key}: {item.reason.value}"
                for item in result.unresolved
            ]
        )


def _repo_root(raw: str) -> Path:
    candidate = Path(raw).expanduser().resolve()
    if not candidate.is_dir():
        raise CLIError(f"repo root is not a directory: {candidate}", exit_code=2)
    return candidate


def _load_effective_config(
    args: argparse.Namespace, overrides: Mapping[str, object]
) -> dict[str, object]:
    try:
        return load_config(args.config_path, profile=args.profile, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_store(state_path: Path | None) -> KnowledgeStore | None:
    if state_path is None or not state_path.exists():
        return None
    try:
        return KnowledgeStore.load(state_path)
    except StoreLoadError as exc:
        raise CLIError(str(exc), exit_code=2) from exc


__all__ = ["CLIError", "build_parser", "run_cli"]
