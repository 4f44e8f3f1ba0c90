"""Putative match diagnostics: adjacency matrix plot and view graph export."""

import matplotlib

matplotlib.use("Agg")

import logging
from collections.abc import Iterable
from pathlib import Path

import matplotlib.pyplot as plt
import networkx as nx
import numpy as np

from ..config import ADJACENCY_MATRIX_FILENAME, VIEW_GRAPH_FILENAME

logger = logging.getLogger(__name__)

Pair = tuple[int, int]


def adjacency_counts(n_views: int, matches: dict[Pair, np.ndarray]) -> np.ndarray:
    """Symmetric matrix of match counts indexed by view id.

    The matrix is grown to cover every view id referenced by ``matches``.
    """
    size = max([n_views, *(max(pair) + 1 for pair in matches)])
    counts = np.zeros((size, size), dtype=np.int64)
    for (i, j), pair_matches in matches.items():
        counts[i, j] = counts[j, i] = len(pair_matches)
    return counts


def render_adjacency_matrix(
    n_views: int,
    matches: dict[Pair, np.ndarray],
    output_path: str | Path,
) -> None:
    """Plot the number of putative matches of every view pair as an SVG heat map.

    Args:
        n_views: Number of views of the scene.
        matches: Dict mapping (i, j) to the (M, 2) match array of that pair.
        output_path: Path to save the SVG image.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    counts = adjacency_counts(n_views, matches)
    masked = np.ma.masked_equal(counts, 0)

    cmap = plt.cm.viridis.copy()
    cmap.set_bad(color="white")

    fig, ax = plt.subplots(1, 1, figsize=(8, 8))
    im = ax.imshow(masked, cmap=cmap, interpolation="nearest", origin="upper")
    cbar = fig.colorbar(im, ax=ax, shrink=0.8)
    cbar.set_label("Putative matches")

    ax.set_xlabel("View id")
    ax.set_ylabel("View id")
    ax.set_title(f"Putative adjacency matrix ({len(matches)} pairs)")

    fig.savefig(output_path, format="svg", bbox_inches="tight")
    plt.close(fig)


def build_view_graph(view_ids: Iterable[int], matches: dict[Pair, np.ndarray]) -> nx.Graph:
    """Build the view graph of a match table.

    Args:
        view_ids: Every view of the scene (isolated views stay as nodes).
        matches: Dict mapping (i, j) to the (M, 2) match array of that pair.

    Returns:
        Undirected graph with one node per view and one edge per pair that
        has at least one match; edge attribute ``weight`` is the match count.
    """
    graph = nx.Graph()
    graph.add_nodes_from(view_ids)
    for (i, j), pair_matches in sorted(matches.items()):
        if len(pair_matches) > 0:
            graph.add_edge(i, j, weight=len(pair_matches))
    return graph


def export_graphviz(graph: nx.Graph, output_path: str | Path) -> None:
    """Write a view graph as Graphviz DOT text.

    Args:
        graph: View graph from build_view_graph().
        output_path: Path to save the DOT file.
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    lines = ["graph putative_matches {"]
    for node in sorted(graph.nodes):
        lines.append(f"  n{node} [label=\"{node}\"];")
    for i, j in sorted(tuple(sorted(edge)) for edge in graph.edges):
        weight = graph.edges[i, j].get("weight", 1)
        lines.append(f"  n{i} -- n{j} [label=\"{weight}\", weight={weight}];")
    lines.append("}")

    output_path.write_text("\n".join(lines) + "\n")


def export_diagnostics(
    view_ids: list[int],
    matches: dict[Pair, np.ndarray],
    output_dir: str | Path,
) -> dict[str, Path]:
    """Write the adjacency matrix and the view graph next to the match file.

    Args:
        view_ids: Every view of the scene.
        matches: Dict mapping (i, j) to the (M, 2) match array of that pair.
        output_dir: Directory of the match file.

    Returns:
        Dict with the written "adjacency_matrix" and "view_graph" paths.
    """
    output_dir = Path(output_dir)

    matrix_path = output_dir / ADJACENCY_MATRIX_FILENAME
    render_adjacency_matrix(len(view_ids), matches, matrix_path)

    graph = build_view_graph(view_ids, matches)
    graph_path = output_dir / VIEW_GRAPH_FILENAME
    export_graphviz(graph, graph_path)

    logger.info(
        "View graph: %d nodes, %d edges, %d connected components",
        graph.number_of_nodes(),
        graph.number_of_edges(),
        nx.number_connected_components(graph),
    )
    return {"adjacency_matrix": matrix_path, "view_graph": graph_path}
