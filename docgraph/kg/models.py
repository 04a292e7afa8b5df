"""
Data models for the Knowledge Graph module.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Any, List, Optional, Tuple

DEFAULT_NODE_TYPE = "CONCEPT"
DEFAULT_EDGE_TYPE = "RELATED_TO"
GRAPH_SCOPES = ("user", "document", "query")

# Keys on stored entity nodes that are not part of the property bag.
_ENTITY_FIELDS = {
    "id", "name", "type", "description", "embedding", "aliases",
    "canonicalId", "isDuplicate",
}


def sanitize_relationship_type(value: Any) -> str:
    """Turn an arbitrary label into an uppercase identifier-safe relationship type."""
    text = re.sub(r"[^A-Z0-9_]", "_", str(value or "").upper())
    text = re.sub(r"_+", "_", text).strip("_")
    return text or DEFAULT_EDGE_TYPE


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _primitive(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)) and all(
        v is None or isinstance(v, (str, int, float, bool)) for v in value
    ):
        return list(value)
    return str(value)


@dataclass
class EntityProperties:
    """Typed property bag with well-known keys and an extension bucket."""
    confidence: Optional[float] = None
    weight: Optional[float] = None
    context: Optional[str] = None
    source_document: Optional[str] = None
    last_updated: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    _KNOWN = {
        "confidence": "confidence",
        "weight": "weight",
        "context": "context",
        "sourceDocument": "source_document",
        "lastUpdated": "last_updated",
    }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EntityProperties":
        props = cls()
        for key, value in (data or {}).items():
            attr = cls._KNOWN.get(key)
            if attr is None and key in cls._KNOWN.values():
                attr = key
            if attr is None:
                props.extra[key] = value
            elif attr in ("confidence", "weight"):
                try:
                    setattr(props, attr, float(value) if value is not None else None)
                except (TypeError, ValueError):
                    props.extra[key] = value
            else:
                setattr(props, attr, None if value is None else str(value))
        return props

    def to_dict(self) -> Dict[str, Any]:
        data = dict(self.extra)
        for key, attr in self._KNOWN.items():
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    def merged(self, incoming: "EntityProperties") -> "EntityProperties":
        """Union of both bags; incoming values win on key collision."""
        return EntityProperties.from_dict({**self.to_dict(), **incoming.to_dict()})


@dataclass
class Entity:
    """Represents an entity in the knowledge graph."""
    id: str
    name: str
    type: str
    description: str = ""
    properties: EntityProperties = field(default_factory=EntityProperties)
    embedding: Optional[List[float]] = None
    aliases: List[str] = field(default_factory=list)
    canonical_id: Optional[str] = None
    is_duplicate: bool = False

    def embedding_text(self) -> str:
        return f"{self.name} {self.type} {self.description or ''}"

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "Entity":
        """Build an entity from a flat node property map as stored in the graph."""
        extra = {k: v for k, v in record.items() if k not in _ENTITY_FIELDS}
        aliases = record.get("aliases") or []
        return cls(
            id=str(record.get("id", "")),
            name=str(record.get("name") or record.get("id", "")),
            type=str(record.get("type") or DEFAULT_NODE_TYPE),
            description=str(record.get("description") or ""),
            properties=EntityProperties.from_dict(extra),
            embedding=record.get("embedding"),
            aliases=[str(a) for a in aliases] if isinstance(aliases, (list, tuple)) else [],
            canonical_id=record.get("canonicalId"),
            is_duplicate=bool(record.get("isDuplicate", False)),
        )

    def to_dict(self, include_embedding: bool = False) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": self.description,
            "properties": self.properties.to_dict(),
            "aliases": list(self.aliases),
            "canonicalId": self.canonical_id,
            "isDuplicate": self.is_duplicate,
        }
        if include_embedding:
            data["embedding"] = self.embedding
        return data


@dataclass
class Relationship:
    """Represents a typed directed relationship between entities."""
    id: str
    source_id: str
    target_id: str
    type: str
    properties: EntityProperties = field(default_factory=EntityProperties)

    def __post_init__(self):
        self.type = sanitize_relationship_type(self.type)

    @property
    def is_self_loop(self) -> bool:
        return self.source_id == self.target_id

    @property
    def confidence(self) -> Optional[float]:
        return self.properties.confidence

    @property
    def weight(self) -> Optional[float]:
        return self.properties.weight

    def signature(self) -> Tuple[str, str, str]:
        return (self.source_id, self.type, self.target_id)


@dataclass
class GraphNode:
    """A node in a returned graph view."""
    id: str
    label: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "label": self.label, "type": self.type, "properties": dict(self.properties)}


@dataclass
class GraphEdge:
    """An edge in a returned graph view."""
    id: str
    source: str
    target: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)

    def undirected_key(self) -> Tuple[str, str, str]:
        low, high = sorted((self.source, self.target))
        return (low, self.type, high)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "type": self.type,
            "properties": dict(self.properties),
        }


@dataclass
class GraphMetadata:
    """Summary information attached to a graph view."""
    entity_count: int = 0
    relationship_count: int = 0
    created_at: str = field(default_factory=utc_now_iso)
    scope: str = "user"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entityCount": self.entity_count,
            "relationshipCount": self.relationship_count,
            "createdAt": self.created_at,
            "scope": self.scope,
        }


def sanitize_node(data: Dict[str, Any]) -> Optional[GraphNode]:
    """Coerce a raw node map into a GraphNode; None when it has no usable id."""
    raw_props = data.get("properties") or {}
    raw_id = data.get("id", raw_props.get("id"))
    if raw_id is None or str(raw_id) == "":
        return None
    node_id = str(raw_id)
    label = data.get("label") or raw_props.get("name") or node_id
    node_type = data.get("type") or raw_props.get("type") or DEFAULT_NODE_TYPE
    properties = {k: _primitive(v) for k, v in raw_props.items() if k != "embedding"}
    properties["id"] = node_id
    properties["name"] = str(raw_props.get("name") or label)
    properties["description"] = str(raw_props.get("description") or "")
    return GraphNode(id=node_id, label=str(label), type=str(node_type), properties=properties)


def sanitize_edge(data: Dict[str, Any]) -> Optional[GraphEdge]:
    """Coerce a raw edge map into a GraphEdge; None when an endpoint is missing."""
    source = data.get("source")
    target = data.get("target")
    if source is None or target is None or str(source) == "" or str(target) == "":
        return None
    source, target = str(source), str(target)
    edge_type = str(data.get("type") or DEFAULT_EDGE_TYPE)
    edge_id = str(data.get("id") or f"{source}-{edge_type}-{target}")
    properties = {k: _primitive(v) for k, v in (data.get("properties") or {}).items()}
    return GraphEdge(id=edge_id, source=source, target=target, type=edge_type, properties=properties)


class KnowledgeGraph:
    """
    A scoped graph view returned to callers.

    Nodes are unique by id; adding a node with a known id merges its
    properties into the existing node. Edges are unique by
    (source, type, target) regardless of direction, must reference known
    nodes and may not be self-loops.
    """

    def __init__(self, scope: str = "user"):
        if scope not in GRAPH_SCOPES:
            raise ValueError(f"Unknown graph scope: {scope}")
        self.scope = scope
        self.created_at = utc_now_iso()
        self._nodes: Dict[str, GraphNode] = {}
        self._edges: List[GraphEdge] = []
        self._edge_keys = set()

    @property
    def nodes(self) -> List[GraphNode]:
        return list(self._nodes.values())

    @property
    def edges(self) -> List[GraphEdge]:
        return list(self._edges)

    @property
    def metadata(self) -> GraphMetadata:
        return GraphMetadata(
            entity_count=len(self._nodes),
            relationship_count=len(self._edges),
            created_at=self.created_at,
            scope=self.scope,
        )

    def has_node(self, node_id: str) -> bool:
        return node_id in self._nodes

    def add_node(self, node: GraphNode) -> GraphNode:
        existing = self._nodes.get(node.id)
        if existing is None:
            self._nodes[node.id] = node
            return node
        for key, value in node.properties.items():
            if key not in existing.properties or existing.properties[key] in (None, ""):
                existing.properties[key] = value
        return existing

    def add_edge(self, edge: GraphEdge) -> bool:
        """Add an edge; returns False when it was dropped."""
        if edge.source == edge.target:
            return False
        if edge.source not in self._nodes or edge.target not in self._nodes:
            return False
        key = edge.undirected_key()
        if key in self._edge_keys:
            return False
        self._edge_keys.add(key)
        self._edges.append(edge)
        return True

    def __len__(self) -> int:
        return len(self._nodes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self._nodes.values()],
            "edges": [e.to_dict() for e in self._edges],
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnowledgeGraph":
        metadata = data.get("metadata") or {}
        scope = metadata.get("scope") if metadata.get("scope") in GRAPH_SCOPES else "user"
        graph = cls(scope=scope)
        if metadata.get("createdAt"):
            graph.created_at = str(metadata["createdAt"])
        for raw_node in data.get("nodes") or []:
            node = sanitize_node(raw_node)
            if node is not None:
                graph.add_node(node)
        for raw_edge in data.get("edges") or []:
            edge = sanitize_edge(raw_edge)
            if edge is not None:
                graph.add_edge(edge)
        return graph
