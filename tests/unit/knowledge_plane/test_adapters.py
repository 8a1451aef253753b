"""Unit tests for per-language source adapters."""

from __future__ import annotations

from pathlib import PurePosixPath

import pytest

from repo_atlas.knowledge_plane.adapters import (
    BINARY_LANGUAGE,
    AdapterRegistry,
    GenericTextAdapter,
    PythonAstAdapter,
    importable_module_names,
    python_module_name,
)


def test_python_imports_resolve_relative_forms_to_absolute_names() -> None:
    source = (
        "import os\n"
        "import pkg.util as util\n"
        "from . import sibling\n"
        "from ..core import engine\n"
        "from .helpers import *\n"
    )

    analysis = AdapterRegistry().analyze("pkg/sub/mod.py", source.encode())

    assert analysis.language == "python"
    assert analysis.imports == (
        "os",
        "pkg.core",
        "pkg.core.engine",
        "pkg.sub",
        "pkg.sub.helpers",
        "pkg.sub.sibling",
        "pkg.util",
    )
    assert analysis.modules == ("pkg.sub.mod",)
    assert analysis.parse_error is None


@pytest.mark.parametrize(
    ("path", "source", "expected"),
    [
        ("tool/__main__.py", "print(1)\n", "main_module"),
        (
            "cli.py",
            "def main():\n    pass\n\nif __name__ == '__main__':\n    main()\n",
            "main_guard",
        ),
        ("run.py", "#!/usr/bin/env python\nprint(1)\n", "script"),
        ("lib.py", "x = 1\n", None),
        ("web/index.js", "console.log(1)\n", "main_module"),
        ("deploy.sh", "#!/bin/sh\necho hi\n", "script"),
    ],
)
def test_entrypoint_detection(path: str, source: str, expected: str | None) -> None:
    assert AdapterRegistry().analyze(path, source.encode()).entrypoint == expected


def test_syntax_errors_fall_back_to_regex_and_report_parse_error() -> None:
    analysis = AdapterRegistry().analyze("broken.py", b"import json\ndef oops(:\n")

    assert analysis.language == "python"
    assert analysis.imports == ("json",)
    assert analysis.parse_error is not None
    assert analysis.parse_error.startswith("SyntaxError at line 2")


def test_generic_adapter_keeps_script_imports_raw() -> None:
    source = (
        "import { useState } from 'react'\n"
        "import { helper } from \"./util\"\n"
        "const fs = require('fs')\n"
    )

    analysis = AdapterRegistry().analyze("web/app.ts", source.encode())

    assert analysis.language == "typescript"
    assert analysis.imports == ("./util", "fs", "react")
    assert analysis.modules == ()


def test_binary_content_short_circuits() -> None:
    analysis = AdapterRegistry().analyze("image.png", b"\x89PNG\x00\x00")

    assert analysis.language == BINARY_LANGUAGE
    assert analysis.imports == ()


def test_unknown_extension_is_unknown_language() -> None:
    assert AdapterRegistry().analyze("LICENSE", b"MIT").language == "unknown"


def test_duplicate_extension_registration_is_rejected() -> None:
    with pytest.raises(ValueError, match="duplicate adapter"):
        AdapterRegistry([PythonAstAdapter(), PythonAstAdapter()])
    lenient = AdapterRegistry([], fallback=GenericTextAdapter())
    assert lenient.analyze("a.py", b"x = (").parse_error is None


def test_module_names_strip_source_roots() -> None:
    assert python_module_name(PurePosixPath("pkg/__init__.py")) == "pkg"
    assert python_module_name(PurePosixPath("my-dir/mod.py")) is None
    assert python_module_name(PurePosixPath("README.md")) is None
    assert importable_module_names(PurePosixPath("src/app/core.py")) == ("app.core", "src.app.core")
    assert importable_module_names(PurePosixPath("app/core.py")) == ("app.core",)
