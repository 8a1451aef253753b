"""
repo-atlas — lightweight per-language source adapters

Purpose
- Extract cheap structural facts from one file: language, import targets,
  module names and entrypoint markers.
- Adapters never execute analyzed code.

Functional requirements
- Python sources are parsed with ``ast``; a syntax error falls back to the
  generic regex adapter and is reported as ``parse_error``.
- Every other text file goes through the generic regex adapter.
"""

from __future__ import annotations

import ast
import re
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from importlib.util import resolve_name
from pathlib import PurePosixPath
from typing import Final, Protocol

MAX_IMPORTS_PER_FILE: Final[int] = 256

BINARY_LANGUAGE: Final[str] = "binary"
UNKNOWN_LANGUAGE: Final[str] = "unknown"

LANGUAGE_BY_SUFFIX: Final[dict[str, str]] = {
    ".py": "python",
    ".pyi": "python",
    ".js": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".kt": "kotlin",
    ".rb": "ruby",
    ".php": "php",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".swift": "swift",
    ".scala": "scala",
    ".sh": "shell",
    ".bash": "shell",
    ".md": "markdown",
    ".rst": "restructuredtext",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".ini": "ini",
    ".cfg": "ini",
    ".html": "html",
    ".css": "css",
    ".sql": "sql",
}

# Leading directories that are not part of a Python module's import name.
PYTHON_SOURCE_ROOTS: Final[frozenset[str]] = frozenset({"src", "lib", "python"})

_IMPORT_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"^\s*import\s+([A-Za-z_][\w.]*)", re.MULTILINE),
    re.compile(r"^\s*from\s+([A-Za-z_][\w.]*)\s+import\b", re.MULTILINE),
    re.compile(r"\bfrom\s+['\"]([\w./@-]+)['\"]"),
    re.compile(r"^\s*import\s+['\"]([\w./@-]+)['\"]", re.MULTILINE),
    re.compile(r"\brequire\(\s*['\"]([\w./@-]+)['\"]\s*\)"),
)
_IDENTIFIER = re.compile(r"[A-Za-z_]\w*", re.ASCII)


class AdapterParseError(ValueError):
    """The adapter could not parse the file it was given."""


@dataclass(frozen=True, slots=True)
class FileAnalysis:
    language: str
    imports: tuple[str, ...] = ()
    modules: tuple[str, ...] = ()
    entrypoint: str | None = None
    parse_error: str | None = None


class LanguageAdapter(Protocol):
    """Turns the text of one file into a :class:`FileAnalysis`."""

    extensions: frozenset[str]

    def analyze(self, source: str, path: PurePosixPath) -> FileAnalysis: ...


class _PythonImports(ast.NodeVisitor):
    """Collects absolute import targets, resolving relative ones against ``package``."""

    def __init__(self, package: str | None) -> None:
        self.package = package
        self.found: set[str] = set()

    def visit_Import(self, node: ast.Import) -> None:
        self.found.update(alias.name for alias in node.names)

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        relative = "." * node.level + (node.module or "")
        if node.level:
            if not self.package:
                return
            try:
                base = resolve_name(relative, self.package)
            except ImportError:
                # Reaches above the top-level package.
                return
        else:
            base = relative
        self.found.add(base)
        self.found.update(f"{base}.{alias.name}" for alias in node.names if alias.name != "*")


@dataclass(frozen=True, slots=True)
class PythonAstAdapter:
    extensions: frozenset[str] = field(default_factory=lambda: frozenset({".py"}))

    def analyze(self, source: str, path: PurePosixPath) -> FileAnalysis:
        try:
            tree = ast.parse(source, filename=path.as_posix())
        except SyntaxError as exc:
            raise AdapterParseError(
                f"SyntaxError at line {exc.lineno or 0}, column {exc.offset or 0}: {exc.msg}"
            ) from exc

        module = python_module_name(path)
        package = module if path.name == "__init__.py" else _parent_package(module)
        collector = _PythonImports(package)
        collector.visit(tree)

        if path.name == "__main__.py":
            entrypoint: str | None = "main_module"
        elif any(_is_main_guard(statement) for statement in tree.body):
            entrypoint = "main_guard"
        else:
            entrypoint = "script" if source.startswith("#!") else None

        return FileAnalysis(
            language=language_for_path(path),
            imports=_capped(collector.found),
            modules=(module,) if module else (),
            entrypoint=entrypoint,
        )


@dataclass(frozen=True, slots=True)
class GenericTextAdapter:
    """Regex import scan for any text file; import targets are kept as written."""

    extensions: frozenset[str] = frozenset()

    def analyze(self, source: str, path: PurePosixPath) -> FileAnalysis:
        found = {
            match.group(1) for pattern in _IMPORT_PATTERNS for match in pattern.finditer(source)
        }
        if source.startswith("#!"):
            entrypoint: str | None = "script"
        elif path.stem in {"main", "index"} and path.suffix != ".py":
            entrypoint = "main_module"
        else:
            entrypoint = None
        module = python_module_name(path)
        return FileAnalysis(
            language=language_for_path(path),
            imports=_capped(found),
            modules=(module,) if module else (),
            entrypoint=entrypoint,
        )


class AdapterRegistry:
    """Routes files to adapters by extension with a generic fallback."""

    def __init__(
        self,
        adapters: Sequence[LanguageAdapter] | None = None,
        *,
        fallback: LanguageAdapter | None = None,
    ) -> None:
        self._fallback: LanguageAdapter = fallback or GenericTextAdapter()
        self._by_suffix: dict[str, LanguageAdapter] = {}
        for adapter in (PythonAstAdapter(),) if adapters is None else adapters:
            for suffix in adapter.extensions:
                if suffix.lower() in self._by_suffix:
                    raise ValueError(f"duplicate adapter registration for extension {suffix!r}")
                self._by_suffix[suffix.lower()] = adapter

    def analyze(self, path: str, content: bytes) -> FileAnalysis:
        """Analyze one file; content with NUL bytes is reported as ``binary``."""
        if b"\x00" in content:
            return FileAnalysis(language=BINARY_LANGUAGE)
        relative = PurePosixPath(path)
        source = content.decode("utf-8", errors="replace")
        adapter = self._by_suffix.get(relative.suffix.lower(), self._fallback)
        try:
            return adapter.analyze(source, relative)
        except AdapterParseError as exc:
            return replace(self._fallback.analyze(source, relative), parse_error=str(exc))


def language_for_path(path: PurePosixPath) -> str:
    return LANGUAGE_BY_SUFFIX.get(path.suffix.lower(), UNKNOWN_LANGUAGE)


def python_module_name(path: PurePosixPath) -> str | None:
    """Dotted module name of a ``.py`` file relative to the repository root."""
    if path.suffix != ".py":
        return None
    parts = path.parts[:-1] if path.name == "__init__.py" else (*path.parts[:-1], path.stem)
    if not parts or not all(_IDENTIFIER.fullmatch(part) for part in parts):
        return None
    return ".".join(parts)


def importable_module_names(path: PurePosixPath) -> tuple[str, ...]:
    """Names a file can be imported under, with and without a leading source root."""
    full = python_module_name(path)
    if full is None:
        return ()
    root, _, rest = full.partition(".")
    if root in PYTHON_SOURCE_ROOTS and rest:
        return tuple(sorted({full, rest}))
    return (full,)


def _parent_package(module: str | None) -> str | None:
    if module is None or "." not in module:
        return None
    return module.rpartition(".")[0]


def _is_main_guard(statement: ast.stmt) -> bool:
    """``if __name__ == "__main__":`` in either operand order."""
    if not isinstance(statement, ast.If) or not isinstance(statement.test, ast.Compare):
        return False
    test = statement.test
    if len(test.ops) != 1 or not isinstance(test.ops[0], ast.Eq):
        return False
    operands = {ast.dump(operand) for operand in (test.left, *test.comparators)}
    return operands == {
        ast.dump(ast.Name(id="__name__", ctx=ast.Load())),
        ast.dump(ast.Constant(value="__main__")),
    }


def _capped(found: set[str]) -> tuple[str, ...]:
    return tuple(sorted(item for item in found if item))[:MAX_IMPORTS_PER_FILE]


__all__ = [
    "AdapterParseError",
    "AdapterRegistry",
    "BINARY_LANGUAGE",
    "FileAnalysis",
    "GenericTextAdapter",
    "LANGUAGE_BY_SUFFIX",
    "LanguageAdapter",
    "MAX_IMPORTS_PER_FILE",
    "PYTHON_SOURCE_ROOTS",
    "PythonAstAdapter",
    "UNKNOWN_LANGUAGE",
    "importable_module_names",
    "language_for_path",
    "python_module_name",
]
