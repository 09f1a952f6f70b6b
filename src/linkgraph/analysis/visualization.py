"""Rendering of dependency closures with matplotlib."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Hashable, Optional, Tuple

import matplotlib.pyplot as plt
import networkx as nx
from matplotlib.patches import Patch

from linkgraph.analysis.graph_loader import node_color

LOGGER = logging.getLogger(__name__)

LAYOUTS = ("layered", "spring", "kamada-kawai")
MAX_LABELLED_NODES = 150

Positions = Dict[Hashable, Tuple[float, float]]


def _layered_positions(graph: nx.DiGraph) -> Optional[Positions]:
    """One row per topological generation, dependees above their dependencies. ``None`` on cycles."""

    if not nx.is_directed_acyclic_graph(graph):
        return None
    layered = nx.DiGraph()
    for depth, generation in enumerate(nx.topological_generations(graph)):
        for node in generation:
            layered.add_node(node, layer=depth)
    positions = nx.multipartite_layout(layered, subset_key="layer", align="horizontal")
    return {node: (x, -y) for node, (x, y) in positions.items()}


def _positions(graph: nx.DiGraph, layout: str) -> Positions:
    if layout not in LAYOUTS:
        raise ValueError(f"Unknown layout: {layout} (expected one of {', '.join(LAYOUTS)})")
    if layout == "layered":
        positions = _layered_positions(graph)
        if positions is not None:
            return positions
        LOGGER.info("Dependency cycle found, falling back to the spring layout")
    if layout == "kamada-kawai" and graph.number_of_nodes() > 1:
        return nx.kamada_kawai_layout(graph)
    return nx.spring_layout(graph, seed=42, iterations=100)


def plot_dependency_graph(
    graph: nx.DiGraph,
    output_path: Path,
    *,
    layout: str = "layered",
    root: Optional[Hashable] = None,
    show_labels: bool = True,
    title: str | None = None,
) -> Path:
    """
    Draw ``graph`` to ``output_path``.

    Nodes take the colour of their artifact type and a legend lists the types present. ``root``, the
    artifact the closure was computed from, is outlined. Labels are skipped on large graphs.
    """

    if graph.number_of_nodes() == 0:
        raise ValueError("Graph contains no nodes to visualize.")
    positions = _positions(graph, layout)

    types = sorted({data.get("type", "unknown") for _, data in graph.nodes(data=True)})
    colours = [data.get("color") or node_color(data.get("type", "")) for _, data in graph.nodes(data=True)]
    outlines = ["black" if node == root else "none" for node in graph.nodes()]

    width = max(8.0, min(24.0, graph.number_of_nodes() * 0.4))
    fig, ax = plt.subplots(figsize=(width, width * 0.75))
    nx.draw_networkx_edges(graph, positions, ax=ax, alpha=0.4, width=0.7, arrows=True, arrowsize=8)
    nx.draw_networkx_nodes(
        graph, positions, ax=ax, node_color=colours, edgecolors=outlines, linewidths=1.5, node_size=160
    )
    if show_labels and graph.number_of_nodes() <= MAX_LABELLED_NODES:
        labels = {node: data.get("label", node) for node, data in graph.nodes(data=True)}
        nx.draw_networkx_labels(graph, positions, labels=labels, ax=ax, font_size=7)

    ax.legend(
        handles=[Patch(color=node_color(artifact_type), label=artifact_type) for artifact_type in types],
        loc="lower right",
        fontsize=8,
    )
    ax.set_title(title or f"{graph.number_of_nodes()} artifacts, {graph.number_of_edges()} dependencies")
    ax.set_axis_off()
    fig.tight_layout()

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=200)
    plt.close(fig)
    LOGGER.info("Plot written to %s", output_path)
    return output_path


__all__ = ["LAYOUTS", "plot_dependency_graph"]
