"""Synthesis plane: phase aggregation and cross-cutting views over knowledge snapshots."""

from repo_atlas.synthesis_plane.synthesizer import (
    CouplingGraph,
    PhaseAggregate,
    Synthesizer,
    build_coupling_graph,
    find_cycles,
)

__all__ = [
    "CouplingGraph",
    "PhaseAggregate",
    "Synthesizer",
    "build_coupling_graph",
    "find_cycles",
]
