"""
repo-atlas — knowledge plane

Purpose
- Scope resolution over the analyzed repository, lightweight per-language
  adapters, and the conflict-aware knowledge store with its immutable views.

Non-functional requirements
- Must be incremental and lightweight on a single machine.
"""

from repo_atlas.knowledge_plane.adapters import (
    AdapterParseError,
    AdapterRegistry,
    FileAnalysis,
    GenericTextAdapter,
    LanguageAdapter,
    PythonAstAdapter,
    importable_module_names,
    language_for_path,
)
from repo_atlas.knowledge_plane.scope import (
    FilesystemScopeProvider,
    InMemoryScopeProvider,
    ScanExcludes,
    ScopeAccessError,
    ScopeEntry,
    ScopeProvider,
    scope_size,
)
from repo_atlas.knowledge_plane.store import (
    KnowledgeGraphView,
    KnowledgeStore,
    MergeError,
    StoreLoadError,
)

__all__ = [
    "AdapterParseError",
    "AdapterRegistry",
    "FileAnalysis",
    "FilesystemScopeProvider",
    "GenericTextAdapter",
    "InMemoryScopeProvider",
    "KnowledgeGraphView",
    "KnowledgeStore",
    "LanguageAdapter",
    "MergeError",
    "PythonAstAdapter",
    "ScanExcludes",
    "ScopeAccessError",
    "ScopeEntry",
    "ScopeProvider",
    "StoreLoadError",
    "importable_module_names",
    "language_for_path",
    "scope_size",
]
