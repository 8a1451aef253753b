"""
repo-atlas — incremental, budget-aware codebase analysis orchestrator.

Package root. Keep imports light: no config loading or logging setup happens at
import time; heavy planes are imported from their own subpackages.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
