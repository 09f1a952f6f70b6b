"""Utilities for turning stored dependency edges into graphs and graph files."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Iterable

import networkx as nx

from linkgraph.parsing.commands import EXECUTABLE, LIBRARY, OBJECT, SHARED, SOURCE, STATIC
from linkgraph.storage.graph_store import Dependency, GraphStore

try:
    import igraph as ig
except ImportError:  # pragma: no cover - igraph optional
    ig = None

NODE_COLORS = {
    SOURCE: (85, 255, 0),
    OBJECT: (255, 170, 0),
    STATIC: (85, 170, 0),
    SHARED: (255, 5, 0),
    LIBRARY: (85, 85, 0),
    EXECUTABLE: (170, 0, 0),
}
DEFAULT_COLOR = (128, 128, 128)


def _hex_color(rgb: tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def node_color(artifact_type: str) -> str:
    return _hex_color(NODE_COLORS.get(artifact_type, DEFAULT_COLOR))


def build_dependency_graph(store: GraphStore, edges: Iterable[Dependency], *, full_path: bool = False) -> nx.DiGraph:
    """
    Build a directed ``dependee -> dependency`` graph from stored edges.

    Nodes are artifact ids carrying ``name``, ``label``, ``type`` and ``color`` attributes. Labels
    are file names unless ``full_path`` is set.
    """

    graph = nx.DiGraph(name="dependencies")

    def add_node(artifact_id: int) -> None:
        if artifact_id in graph:
            return
        artifact = store.get_artifact(artifact_id)
        if artifact is None:
            raise KeyError(f"Unknown artifact #{artifact_id}")
        label = artifact.name if full_path else os.path.basename(artifact.name) or artifact.name
        graph.add_node(
            artifact.id,
            name=artifact.name,
            label=label,
            type=artifact.type,
            color=node_color(artifact.type),
        )

    for edge in edges:
        add_node(edge.dependee_id)
        add_node(edge.dependency_id)
        graph.add_edge(edge.dependee_id, edge.dependency_id)

    graph.graph["node_count"] = graph.number_of_nodes()
    graph.graph["edge_count"] = graph.number_of_edges()
    return graph


def export_text(graph: nx.DiGraph, destination: Path) -> None:
    """Write one ``dependee -> dependency`` line per edge."""

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    lines = [
        f"{graph.nodes[source].get('label', source)} -> {graph.nodes[target].get('label', target)}"
        for source, target in graph.edges()
    ]
    destination.write_text("".join(f"{line}\n" for line in sorted(lines)), encoding="utf-8")


def export_generic_graph(graph: nx.DiGraph, destination: Path) -> None:
    """Persist a dependency graph to JSON."""

    destination = Path(destination)
    payload = {
        "graph": graph.graph.get("name", destination.stem),
        "types": sorted({data.get("type", "unknown") for _, data in graph.nodes(data=True)}),
        "node_count": graph.number_of_nodes(),
        "edge_count": graph.number_of_edges(),
        "nodes": [],
        "edges": [],
    }

    for node, data in graph.nodes(data=True):
        attributes = {k: (str(v) if v is not None else None) for k, v in data.items()}
        payload["nodes"].append({"id": node, **attributes})

    for source, target in graph.edges():
        payload["edges"].append({"source": source, "target": target})

    destination.parent.mkdir(parents=True, exist_ok=True)
    with destination.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle, indent=2)


def sanitize_for_graphml(graph: nx.DiGraph) -> nx.DiGraph:
    """Return a copy of the graph with GraphML-friendly attributes."""

    def sanitize(mapping):
        for key in list(mapping.keys()):
            value = mapping[key]
            if value is None:
                del mapping[key]
                continue
            if isinstance(value, (list, tuple, set)):
                mapping[key] = ",".join(str(item) for item in value)
            elif isinstance(value, dict):
                mapping[key] = json.dumps(value)

    copy = graph.copy()
    sanitize(copy.graph)
    for _, data in copy.nodes(data=True):
        sanitize(data)
    for _, _, data in copy.edges(data=True):
        sanitize(data)
    return copy


def export_graphml(graph: nx.DiGraph, destination: Path) -> None:
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    nx.write_graphml(sanitize_for_graphml(graph), destination)


def to_igraph(graph: nx.DiGraph) -> "ig.Graph":
    """Convert a networkx graph into an igraph.Graph."""

    if ig is None:  # pragma: no cover - import guard
        raise ImportError("igraph is not installed. Install optional dependency `pip install igraph`.")

    vertices = list(graph.nodes())
    ig_graph = ig.Graph(directed=graph.is_directed())
    ig_graph.add_vertices(len(vertices))
    ig_graph.vs["node_id"] = vertices
    index_map = {node: idx for idx, node in enumerate(vertices)}

    attr_names: set[str] = set()
    for _, data in graph.nodes(data=True):
        attr_names.update(data.keys())
    for attr in attr_names:
        ig_graph.vs[attr] = [graph.nodes[v].get(attr) for v in vertices]

    edge_indices = [(index_map[source], index_map[target]) for source, target in graph.edges()]
    if edge_indices:
        ig_graph.add_edges(edge_indices)

    for key, value in graph.graph.items():
        ig_graph[key] = value

    return ig_graph


def export_dot(graph: nx.DiGraph, destination: Path) -> None:
    """Write a Graphviz dot file through igraph, keeping the node label, type and color."""

    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    to_igraph(sanitize_for_graphml(graph)).write_dot(str(destination))


__all__ = [
    "NODE_COLORS",
    "build_dependency_graph",
    "export_dot",
    "export_generic_graph",
    "export_graphml",
    "export_text",
    "node_color",
    "sanitize_for_graphml",
    "to_igraph",
]
