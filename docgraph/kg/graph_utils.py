"""
Storage-agnostic analytics over in-memory node/edge sets.

Every function accepts a ``GraphData``, a ``KnowledgeGraph`` or a plain
``{"nodes": [...], "edges": [...]}`` mapping. Graph traversal is delegated to
networkx with every edge treated as undirected.
"""

import csv
import io
import json
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

import networkx as nx

from .models import GraphEdge, GraphNode, KnowledgeGraph, sanitize_edge, sanitize_node

logger = logging.getLogger(__name__)


@dataclass
class GraphData:
    """Loose node/edge listing; unlike KnowledgeGraph it may be structurally invalid."""
    nodes: List[GraphNode] = field(default_factory=list)
    edges: List[GraphEdge] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes],
            "edges": [e.to_dict() for e in self.edges],
        }


@dataclass
class PathResult:
    """Ordered nodes and edges of a path."""
    nodes: List[GraphNode]
    edges: List[GraphEdge]

    @property
    def length(self) -> int:
        return len(self.edges)


@dataclass
class ValidationResult:
    is_valid: bool
    errors: List[str]
    warnings: List[str]

    def to_dict(self) -> Dict[str, Any]:
        return {"isValid": self.is_valid, "errors": list(self.errors), "warnings": list(self.warnings)}


GraphLike = Union[GraphData, KnowledgeGraph, Dict[str, Any]]


def _coerce_node(node: Any) -> GraphNode:
    if isinstance(node, GraphNode):
        return node
    sanitized = sanitize_node(node)
    if sanitized is not None:
        return sanitized
    # Keep id-less nodes so validation can report them.
    return GraphNode(id="", label="", type="", properties=dict(node.get("properties") or {}))


def _coerce_edge(edge: Any) -> GraphEdge:
    if isinstance(edge, GraphEdge):
        return edge
    sanitized = sanitize_edge(edge)
    if sanitized is not None:
        return sanitized
    return GraphEdge(
        id=str(edge.get("id") or ""),
        source=str(edge.get("source") or ""),
        target=str(edge.get("target") or ""),
        type=str(edge.get("type") or edge.get("label") or ""),
        properties=dict(edge.get("properties") or {}),
    )


def as_graph_data(graph: GraphLike) -> GraphData:
    """Normalise any supported graph representation to GraphData."""
    if isinstance(graph, GraphData):
        return graph
    if isinstance(graph, KnowledgeGraph):
        return GraphData(nodes=graph.nodes, edges=graph.edges)
    return GraphData(
        nodes=[_coerce_node(n) for n in graph.get("nodes") or []],
        edges=[_coerce_edge(e) for e in graph.get("edges") or []],
    )


def to_networkx(graph: GraphLike) -> nx.Graph:
    """Undirected networkx view; nodes referenced only by edges are included."""
    data = as_graph_data(graph)
    g = nx.Graph()
    g.add_nodes_from(n.id for n in data.nodes if n.id)
    g.add_edges_from((e.source, e.target) for e in data.edges if e.source and e.target)
    return g


def _degrees(data: GraphData) -> Counter:
    degrees: Counter = Counter()
    for edge in data.edges:
        degrees[edge.source] += 1
        degrees[edge.target] += 1
    return degrees


def count_connected_components(graph: GraphLike) -> int:
    """Number of connected components that contain at least one declared node."""
    data = as_graph_data(graph)
    declared = {n.id for n in data.nodes if n.id}
    g = to_networkx(data)
    return sum(1 for component in nx.connected_components(g) if component & declared)


def calculate_graph_stats(graph: GraphLike) -> Dict[str, Any]:
    """
    Compute summary statistics for a graph.

    Average and max degree are taken over nodes that appear in at least one
    edge. Density treats the graph as simple and undirected.
    """
    data = as_graph_data(graph)
    node_count = len(data.nodes)
    edge_count = len(data.edges)

    node_types = Counter(n.type or "UNKNOWN" for n in data.nodes)
    edge_types = Counter(e.type or "UNKNOWN" for e in data.edges)
    degrees = _degrees(data)

    avg_degree = sum(degrees.values()) / len(degrees) if degrees else 0.0
    max_degree = max(degrees.values()) if degrees else 0
    isolated = sum(1 for n in data.nodes if degrees.get(n.id, 0) == 0)

    max_possible_edges = node_count * (node_count - 1) / 2
    density = edge_count / max_possible_edges if max_possible_edges > 0 else 0.0

    return {
        "node_count": node_count,
        "edge_count": edge_count,
        "node_types": dict(node_types),
        "edge_types": dict(edge_types),
        "avg_degree": avg_degree,
        "max_degree": max_degree,
        "isolated_nodes": isolated,
        "connected_components": count_connected_components(data),
        "density": density,
    }


def _edge_between(data: GraphData, a: str, b: str) -> Optional[GraphEdge]:
    for edge in data.edges:
        if (edge.source == a and edge.target == b) or (edge.source == b and edge.target == a):
            return edge
    return None


def find_shortest_path(graph: GraphLike, source_id: str, target_id: str) -> Optional[PathResult]:
    """
    Unweighted shortest path between two node ids.

    Returns None when either node is unknown or the target is unreachable.
    Identical source and target give a single-node path with no edges.
    """
    data = as_graph_data(graph)
    nodes_by_id = {n.id: n for n in data.nodes}

    if source_id == target_id:
        node = nodes_by_id.get(source_id)
        return PathResult(nodes=[node], edges=[]) if node else None

    g = to_networkx(data)
    try:
        node_ids = nx.shortest_path(g, source_id, target_id)
    except (nx.NetworkXNoPath, nx.NodeNotFound):
        return None

    path_nodes = [nodes_by_id[n] for n in node_ids if n in nodes_by_id]
    path_edges = []
    for a, b in zip(node_ids, node_ids[1:]):
        edge = _edge_between(data, a, b)
        if edge is not None:
            path_edges.append(edge)
    return PathResult(nodes=path_nodes, edges=path_edges)


def find_nodes_within_distance(graph: GraphLike, node_id: str, max_distance: int) -> GraphData:
    """Induced subgraph of nodes reachable from node_id in at most max_distance hops."""
    data = as_graph_data(graph)
    g = to_networkx(data)
    if node_id not in g:
        return GraphData()

    reachable = set(nx.single_source_shortest_path_length(g, node_id, cutoff=max(0, max_distance)))
    return GraphData(
        nodes=[n for n in data.nodes if n.id in reachable],
        edges=[e for e in data.edges if e.source in reachable and e.target in reachable],
    )


def calculate_node_importance(graph: GraphLike) -> Dict[str, float]:
    """Degree of each node normalised by the maximum degree in the graph."""
    data = as_graph_data(graph)
    degrees = _degrees(data)
    max_degree = max(list(degrees.values()) + [1])
    return {n.id: degrees.get(n.id, 0) / max_degree for n in data.nodes}


def find_hubs(graph: GraphLike, limit: int = 10) -> List[Tuple[GraphNode, int]]:
    """Nodes with the highest degree, most connected first."""
    data = as_graph_data(graph)
    degrees = _degrees(data)
    ranked = sorted(data.nodes, key=lambda n: degrees.get(n.id, 0), reverse=True)
    return [(n, degrees.get(n.id, 0)) for n in ranked[:limit] if degrees.get(n.id, 0) > 0]


def filter_by_connectivity(graph: GraphLike, min_connections: int = 2) -> GraphData:
    """Keep nodes with degree >= min_connections and edges between surviving nodes."""
    data = as_graph_data(graph)
    degrees = _degrees(data)
    keep = {n.id for n in data.nodes if degrees.get(n.id, 0) >= min_connections}
    return GraphData(
        nodes=[n for n in data.nodes if n.id in keep],
        edges=[e for e in data.edges if e.source in keep and e.target in keep],
    )


def group_nodes_by_type(graph: GraphLike) -> Dict[str, List[GraphNode]]:
    groups: Dict[str, List[GraphNode]] = {}
    for node in as_graph_data(graph).nodes:
        groups.setdefault(node.type or "UNKNOWN", []).append(node)
    return groups


def validate_graph(graph: GraphLike) -> ValidationResult:
    """
    Structural validation.

    Errors: nodes without an id, duplicate node ids, edges referencing
    unknown endpoints. Warnings: isolated nodes.
    """
    data = as_graph_data(graph)
    errors: List[str] = []
    warnings: List[str] = []
    node_ids = set()

    for node in data.nodes:
        if not node.id:
            errors.append("Node missing ID")
        elif node.id in node_ids:
            errors.append(f"Duplicate node ID: {node.id}")
        else:
            node_ids.add(node.id)

    connected = set()
    for edge in data.edges:
        if edge.source not in node_ids:
            errors.append(f"Edge references non-existent source: {edge.source}")
        if edge.target not in node_ids:
            errors.append(f"Edge references non-existent target: {edge.target}")
        connected.add(edge.source)
        connected.add(edge.target)

    isolated = sum(1 for n in data.nodes if n.id and n.id not in connected)
    if isolated:
        warnings.append(f"Graph has {isolated} isolated nodes")

    return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def merge_graphs(*graphs: GraphLike) -> GraphData:
    """Union of graphs; first node per id wins, edges unique by (source, type, target)."""
    nodes: Dict[str, GraphNode] = {}
    edges: List[GraphEdge] = []
    seen_edges = set()

    for graph in graphs:
        data = as_graph_data(graph)
        for node in data.nodes:
            nodes.setdefault(node.id, node)
        for edge in data.edges:
            key = (edge.source, edge.type, edge.target)
            if key not in seen_edges:
                seen_edges.add(key)
                edges.append(edge)

    return GraphData(nodes=list(nodes.values()), edges=edges)


def _cypher_string(value: str) -> str:
    return str(value).replace("\\", "\\\\").replace('"', '\\"')


def _cypher_label(value: str, default: str) -> str:
    label = re.sub(r"[^A-Za-z0-9_]", "_", str(value or "")).strip("_")
    return label or default


def _csv_rows(header: List[str], rows: List[Tuple[Any, ...]]) -> str:
    buffer = io.StringIO()
    buffer.write(",".join(header) + "\n")
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerows([tuple("" if v is None else v for v in row) for row in rows])
    return buffer.getvalue().rstrip("\n")


def export_graph(graph: GraphLike, format: str = "json") -> str:
    """Serialise a graph as json, csv or a Cypher creation script."""
    data = as_graph_data(graph)

    if format == "csv":
        node_rows = _csv_rows(["id", "label", "type"], [(n.id, n.label, n.type) for n in data.nodes])
        edge_rows = _csv_rows(["source", "target", "type"], [(e.source, e.target, e.type) for e in data.edges])
        return "NODES:\n" + node_rows + "\n\nEDGES:\n" + edge_rows

    if format == "cypher":
        statements = []
        for node in data.nodes:
            var = re.sub(r"[^A-Za-z0-9]", "", node.id)
            statements.append(
                f'CREATE (n{var}:{_cypher_label(node.type, "CONCEPT")} '
                f'{{id: "{_cypher_string(node.id)}", label: "{_cypher_string(node.label)}"}})'
            )
        for edge in data.edges:
            statements.append(
                f'MATCH (a {{id: "{_cypher_string(edge.source)}"}}), (b {{id: "{_cypher_string(edge.target)}"}}) '
                f'CREATE (a)-[:{_cypher_label(edge.type, "RELATED_TO")}]->(b)'
            )
        return ";\n".join(statements) + ";"

    if format != "json":
        logger.warning(f"Unknown export format {format}, falling back to json")
    return json.dumps(data.to_dict(), indent=2)

