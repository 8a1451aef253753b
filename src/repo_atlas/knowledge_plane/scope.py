"""
repo-atlas — scope providers

Purpose
- Resolve opaque ``Scope`` locators into concrete file listings and file bytes.
- Apply one centralized exclusion policy for VCS, build and cache directories.

Functional requirements
- Deterministic, sorted listings for the same repository snapshot.
- Containment-safe reads: nothing outside the configured root is ever read.
- Read-only: providers never write to the analyzed repository.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Any, Final, Protocol

import structlog

from repo_atlas.domain.models import Scope

DEFAULT_MAX_FILE_BYTES: Final[int] = 1_000_000

_DEFAULT_EXCLUDED_DIRECTORIES: Final[frozenset[str]] = frozenset(
    {
        ".atlas",
        ".git",
        ".hg",
        ".svn",
        ".venv",
        ".mypy_cache",
        ".pytest_cache",
        ".ruff_cache",
        "__pycache__",
        "node_modules",
        "build",
        "dist",
    }
)
_DEFAULT_EXCLUDED_SUFFIXES: Final[frozenset[str]] = frozenset(
    {".pyc", ".pyo", ".so", ".dylib", ".dll", ".class", ".o", ".a"}
)
_DEFAULT_EXCLUDED_GLOBS: Final[tuple[str, ...]] = (
    "*.egg-info/*",
    "*.min.js",
    "*.min.css",
)


class ScopeAccessError(ValueError):
    """Raised when a path is unknown, excluded, or outside the provider root."""


@dataclass(frozen=True, slots=True, order=True)
class ScopeEntry:
    """One file of a scope with its size in bytes."""

    path: str
    size: int


class ScopeProvider(Protocol):
    """Resolves scopes to files. Implementations must be safe to share across workers."""

    def root_scope(self) -> Scope: ...

    def list(self, scope: Scope) -> tuple[ScopeEntry, ...]: ...

    def read(self, path: str) -> bytes: ...


@dataclass(frozen=True, slots=True)
class ScanExcludes:
    """Centralized repository exclusion policy."""

    directories: frozenset[str] = _DEFAULT_EXCLUDED_DIRECTORIES
    suffixes: frozenset[str] = _DEFAULT_EXCLUDED_SUFFIXES
    globs: tuple[str, ...] = _DEFAULT_EXCLUDED_GLOBS

    @classmethod
    def from_config(cls, scan: Mapping[str, object]) -> ScanExcludes:
        """Build the policy from a validated ``[scan]`` config section."""
        raw = scan.get("exclude_dirs")
        if raw is None:
            return cls()
        if isinstance(raw, str) or not isinstance(raw, Iterable):
            raise ValueError("scan.exclude_dirs must be a list of directory names")
        return cls(directories=frozenset(str(item) for item in raw))

    def should_exclude(self, relative_path: PurePosixPath, *, is_dir: bool) -> bool:
        """Return whether ``relative_path`` should be excluded from scanning."""

        parts = relative_path.parts
        if any(part in self.directories for part in parts[:-1]):
            return True

        leaf = relative_path.name
        if is_dir and leaf in self.directories:
            return True
        if not is_dir and relative_path.suffix.lower() in self.suffixes:
            return True

        candidate = relative_path.as_posix()
        return any(fnmatch(candidate, pattern) for pattern in self.globs)


def scope_size(provider: ScopeProvider, scope: Scope) -> int:
    """Total size in bytes of every file in ``scope``."""
    return sum(entry.size for entry in provider.list(scope))


class FilesystemScopeProvider:
    """
    Scope provider over a local directory tree.

    The tree is walked once, lazily, with symlinks ignored and excluded
    directories pruned. Files larger than ``max_file_bytes`` are left out of
    every scope and logged.
    """

    def __init__(
        self,
        root: str | os.PathLike[str],
        *,
        excludes: ScanExcludes | None = None,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        logger: Any | None = None,
    ) -> None:
        resolved_root = Path(root).resolve(strict=True)
        if not resolved_root.is_dir():
            raise NotADirectoryError(f"{resolved_root!s} is not a directory")
        if max_file_bytes <= 0:
            raise ValueError("max_file_bytes must be > 0")

        self._root = resolved_root
        self._excludes = excludes if excludes is not None else ScanExcludes()
        self._max_file_bytes = max_file_bytes
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._sizes: dict[str, int] | None = None

    @property
    def root(self) -> Path:
        return self._root

    def root_scope(self) -> Scope:
        return Scope(paths=tuple(self._catalog()), base="")

    def list(self, scope: Scope) -> tuple[ScopeEntry, ...]:
        catalog = self._catalog()
        entries: list[ScopeEntry] = []
        for path in scope.paths:
            size = catalog.get(path)
            if size is None:
                raise ScopeAccessError(f"path is not part of the scanned tree: {path!r}")
            entries.append(ScopeEntry(path=path, size=size))
        return tuple(entries)

    def read(self, path: str) -> bytes:
        if path not in self._catalog():
            raise ScopeAccessError(f"path is not part of the scanned tree: {path!r}")
        local_path = self._root.joinpath(*PurePosixPath(path).parts)
        if local_path.is_symlink():
            raise ScopeAccessError(f"refusing to follow symlink: {path!r}")
        resolved = local_path.resolve(strict=True)
        try:
            resolved.relative_to(self._root)
        except ValueError as exc:
            raise ScopeAccessError(f"path escapes repository root: {path!r}") from exc
        return resolved.read_bytes()

    def _catalog(self) -> dict[str, int]:
        if self._sizes is None:
            self._sizes = self._walk()
        return self._sizes

    def _walk(self) -> dict[str, int]:
        sizes: dict[str, int] = {}
        skipped = 0
        for current_dir, dir_names, file_names in os.walk(
            self._root, topdown=True, followlinks=False
        ):
            current_path = Path(current_dir)
            relative_dir = PurePosixPath(current_path.relative_to(self._root).as_posix())

            dir_names[:] = [
                directory
                for directory in sorted(dir_names)
                if not self._excludes.should_exclude(relative_dir / directory, is_dir=True)
            ]

            for file_name in sorted(file_names):
                relative_file = PurePosixPath(
                    file_name if relative_dir.as_posix() == "." else f"{relative_dir}/{file_name}"
                )
                if self._excludes.should_exclude(relative_file, is_dir=False):
                    continue
                local_file = current_path / file_name
                if local_file.is_symlink() or not local_file.is_file():
                    continue
                size = local_file.stat().st_size
                if size > self._max_file_bytes:
                    skipped += 1
                    self._logger.info(
                        "scope_file_skipped",
                        path=relative_file.as_posix(),
                        size_bytes=size,
                        max_file_bytes=self._max_file_bytes,
                    )
                    continue
                sizes[relative_file.as_posix()] = size

        self._logger.info(
            "scope_tree_scanned",
            root=self._root.as_posix(),
            file_count=len(sizes),
            skipped_count=skipped,
        )
        return dict(sorted(sizes.items()))


class InMemoryScopeProvider:
    """Scope provider over an in-memory ``{path: content}`` mapping."""

    def __init__(self, files: Mapping[str, bytes | str]) -> None:
        contents: dict[str, bytes] = {}
        for path, content in files.items():
            # Validates the path shape the same way scopes do.
            Scope.of_file(path)
            contents[path] = content.encode("utf-8") if isinstance(content, str) else content
        self._contents = dict(sorted(contents.items()))

    def root_scope(self) -> Scope:
        return Scope(paths=tuple(self._contents), base="")

    def list(self, scope: Scope) -> tuple[ScopeEntry, ...]:
        entries: list[ScopeEntry] = []
        for path in scope.paths:
            content = self._contents.get(path)
            if content is None:
                raise ScopeAccessError(f"unknown path: {path!r}")
            entries.append(ScopeEntry(path=path, size=len(content)))
        return tuple(entries)

    def read(self, path: str) -> bytes:
        content = self._contents.get(path)
        if content is None:
            raise ScopeAccessError(f"unknown path: {path!r}")
        return content


__all__ = [
    "DEFAULT_MAX_FILE_BYTES",
    "FilesystemScopeProvider",
    "InMemoryScopeProvider",
    "ScanExcludes",
    "ScopeAccessError",
    "ScopeEntry",
    "ScopeProvider",
    "scope_size",
]
