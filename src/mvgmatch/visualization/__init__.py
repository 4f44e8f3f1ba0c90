"""Visualization outputs for putative match tables."""

from .graph import (
    adjacency_counts,
    build_view_graph,
    export_diagnostics,
    export_graphviz,
    render_adjacency_matrix,
)

__all__ = [
    "adjacency_counts",
    "build_view_graph",
    "export_diagnostics",
    "export_graphviz",
    "render_adjacency_matrix",
]
