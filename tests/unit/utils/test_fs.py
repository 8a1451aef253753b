"""Tests for atomic file writes."""

from __future__ import annotations

from pathlib import Path

from repo_atlas.utils.fs import atomic_write


def test_atomic_write_creates_parents_and_replaces_content(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "dir" / "out.json"

    atomic_write(target, "first")
    atomic_write(target, b"second")

    assert target.read_bytes() == b"second"
    assert sorted(path.name for path in target.parent.iterdir()) == ["out.json"]


def test_atomic_write_encodes_text_with_requested_encoding(tmp_path: Path) -> None:
    target = tmp_path / "out.txt"

    atomic_write(target, "café", encoding="latin-1")

    assert target.read_bytes() == b"caf\xe9"
