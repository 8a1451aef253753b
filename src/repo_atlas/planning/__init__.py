"""
repo-atlas — planning layer

Purpose
- Decomposition of oversized Tasks and the graph utilities shared by the
  scheduler (task dependencies) and the synthesizer (coupling).

Non-functional requirements
- Must produce repeatable plans given the same repository snapshot and config.
"""

from repo_atlas.planning.decomposer import Decomposer, UnsplittableTaskError
from repo_atlas.planning.task_graph import TaskGraph

__all__ = ["Decomposer", "TaskGraph", "UnsplittableTaskError"]
