"""
Knowledge graph storage, entity resolution and graph analytics.
"""

from .models import (
    Entity,
    EntityProperties,
    Relationship,
    GraphNode,
    GraphEdge,
    GraphMetadata,
    KnowledgeGraph,
    sanitize_relationship_type,
)
from .graph_store import Neo4jGraphStore
from .graph_processor import GraphProcessor
from . import graph_utils

__all__ = [
    "Entity",
    "EntityProperties",
    "Relationship",
    "GraphNode",
    "GraphEdge",
    "GraphMetadata",
    "KnowledgeGraph",
    "sanitize_relationship_type",
    "Neo4jGraphStore",
    "GraphProcessor",
    "graph_utils",
]
