"""Unit tests for scope providers and the scan exclusion policy."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath

import pytest
from structlog.testing import capture_logs

from repo_atlas.domain.models import Scope
from repo_atlas.knowledge_plane.scope import (
    FilesystemScopeProvider,
    InMemoryScopeProvider,
    ScanExcludes,
    ScopeAccessError,
    ScopeEntry,
    scope_size,
)


def _write(root: Path, relative: str, content: str) -> None:
    path = root / relative
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


def test_filesystem_provider_lists_sorted_files_and_prunes_excluded_dirs(tmp_path: Path) -> None:
    _write(tmp_path, "src/app.py", "print('hi')\n")
    _write(tmp_path, "README.md", "# readme\n")
    _write(tmp_path, ".git/config", "[core]\n")
    _write(tmp_path, "node_modules/lib/index.js", "module.exports = 1\n")
    _write(tmp_path, "src/__pycache__/app.cpython-311.pyc", "junk")
    _write(tmp_path, "web/app.min.js", "x")

    provider = FilesystemScopeProvider(tmp_path)
    scope = provider.root_scope()

    assert scope.paths == ("README.md", "src/app.py")
    assert provider.list(scope) == (
        ScopeEntry("README.md", 9),
        ScopeEntry("src/app.py", 12),
    )
    assert provider.read("src/app.py") == b"print('hi')\n"
    assert scope_size(provider, scope) == 21


def test_oversized_files_are_skipped_and_logged(tmp_path: Path) -> None:
    _write(tmp_path, "small.txt", "ok")
    _write(tmp_path, "big.bin.txt", "x" * 50)

    with capture_logs() as logs:
        provider = FilesystemScopeProvider(tmp_path, max_file_bytes=10)
        paths = provider.root_scope().paths

    assert paths == ("small.txt",)
    skipped = [entry for entry in logs if entry["event"] == "scope_file_skipped"]
    assert skipped == [
        {
            "event": "scope_file_skipped",
            "log_level": "info",
            "path": "big.bin.txt",
            "size_bytes": 50,
            "max_file_bytes": 10,
        }
    ]


def test_reads_outside_the_scanned_tree_are_refused(tmp_path: Path) -> None:
    _write(tmp_path, "inside.py", "x = 1\n")
    provider = FilesystemScopeProvider(tmp_path)

    with pytest.raises(ScopeAccessError, match="not part of the scanned tree"):
        provider.read("../outside.py")
    with pytest.raises(ScopeAccessError):
        provider.list(Scope(paths=("missing.py",)))


@pytest.mark.skipif(not hasattr(os, "symlink"), reason="symlinks unsupported")
def test_symlinks_are_ignored(tmp_path: Path) -> None:
    _write(tmp_path, "real.py", "x = 1\n")
    outside = tmp_path.parent / f"{tmp_path.name}-outside.py"
    outside.write_text("secret = 1\n", encoding="utf-8")
    (tmp_path / "link.py").symlink_to(outside)

    provider = FilesystemScopeProvider(tmp_path)

    assert provider.root_scope().paths == ("real.py",)


def test_provider_rejects_missing_or_non_directory_roots(tmp_path: Path) -> None:
    file_path = tmp_path / "file.txt"
    file_path.write_text("x", encoding="utf-8")

    with pytest.raises(NotADirectoryError):
        FilesystemScopeProvider(file_path)
    with pytest.raises(FileNotFoundError):
        FilesystemScopeProvider(tmp_path / "nope")


def test_scan_excludes_from_config_replaces_directory_list() -> None:
    excludes = ScanExcludes.from_config({"exclude_dirs": ["vendor"]})

    assert excludes.should_exclude(PurePosixPath("vendor/x.go"), is_dir=False)
    assert not excludes.should_exclude(PurePosixPath(".git/config"), is_dir=False)
    assert excludes.should_exclude(PurePosixPath("pkg/mod.pyc"), is_dir=False)
    with pytest.raises(ValueError, match="exclude_dirs"):
        ScanExcludes.from_config({"exclude_dirs": "vendor"})


def test_in_memory_provider_sizes_and_reads() -> None:
    provider = InMemoryScopeProvider({"b.py": "bb", "a/c.py": b"\x00\x01"})

    assert provider.root_scope().paths == ("a/c.py", "b.py")
    assert provider.list(Scope.of_file("b.py")) == (ScopeEntry("b.py", 2),)
    assert provider.read("a/c.py") == b"\x00\x01"
    with pytest.raises(ScopeAccessError, match="unknown path"):
        provider.read("zzz.py")
    with pytest.raises(ValueError):
        InMemoryScopeProvider({"../escape.py": ""})
