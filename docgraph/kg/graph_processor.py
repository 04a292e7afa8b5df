"""
Entity resolution and scoped knowledge-graph construction.
"""

import logging
import re
from typing import List, Dict, Any, Optional

from .graph_store import Neo4jGraphStore
from .graph_utils import calculate_graph_stats, validate_graph
from .models import (
    Entity,
    GraphNode,
    KnowledgeGraph,
    Relationship,
    sanitize_edge,
    sanitize_node,
    utc_now_iso,
)
from ..cache import Cache, NullCache, make_cache_key
from ..rag.vector_store import cosine_similarity

logger = logging.getLogger(__name__)

QUERY_GRAPH_STOPWORDS = {
    "what", "where", "when", "which", "who", "how", "does", "about", "the",
    "this", "that", "with", "from", "have", "been",
}


def extract_query_keywords(query: str, limit: int = 5) -> List[str]:
    """Content words longer than three characters, stopwords removed."""
    keywords = []
    for word in re.findall(r"[a-z0-9]+", (query or "").lower()):
        if len(word) > 3 and word not in QUERY_GRAPH_STOPWORDS and word not in keywords:
            keywords.append(word)
    return keywords[:limit]


def _node_from_entity(entity: Dict[str, Any]) -> Optional[GraphNode]:
    return sanitize_node({
        "id": entity.get("id"),
        "label": entity.get("name"),
        "type": entity.get("type"),
        "properties": entity,
    })


class GraphProcessor:
    """Deduplicates entities and builds user, document and query scoped graph views."""

    def __init__(self, config: Dict[str, Any], graph_store: Neo4jGraphStore, llm_manager, cache: Optional[Cache] = None):
        self.config = config
        self.graph_store = graph_store
        self.llm_manager = llm_manager
        self.cache = cache or NullCache()

        self.similarity_threshold = config.get("similarity_threshold", 0.85)
        self.central_entity_limit = config.get("central_entity_limit", 500)
        self.central_relationship_limit = config.get("central_relationship_limit", 1000)
        self.central_cache_ttl = config.get("central_cache_ttl", 1800)
        self.document_cache_ttl = config.get("document_cache_ttl", 1800)
        self.query_cache_ttl = config.get("query_cache_ttl", 600)
        self.query_keyword_limit = config.get("query_keyword_limit", 5)
        self.query_seed_limit = config.get("query_seed_limit", 10)
        self.default_edge_confidence = config.get("default_edge_confidence", 0.8)

    # ------------------------------------------------------------------
    # Entity resolution
    # ------------------------------------------------------------------

    async def resolve_entities(self, user_id: str, entities: List[Entity]) -> List[Entity]:
        """
        Resolve extracted entities against the user's existing graph.

        Each entity is compared with same-type candidates found by exact name,
        alias or substring match. The most similar candidate at or above the
        similarity threshold absorbs the entity; otherwise the entity is kept
        as a new canonical entity.

        Args:
            user_id: Owner of the corpus
            entities: Entities to resolve

        Returns:
            One resolved entity per input, in input order
        """
        logger.info(f"Resolving {len(entities)} entities for user {user_id}")
        resolved = []

        for entity in entities:
            if entity.embedding is None:
                entity.embedding = await self.llm_manager.embed(entity.embedding_text())

            match = await self._find_best_match(user_id, entity)
            if match is None:
                resolved.append(entity)
            else:
                resolved.append(await self._merge_entities(entity, match))

        merged = sum(1 for e in resolved if e.canonical_id)
        logger.info(f"Resolved {len(entities)} entities, {merged} merged into existing entities")
        return resolved

    async def _find_best_match(self, user_id: str, entity: Entity) -> Optional[Dict[str, Any]]:
        candidates = await self.graph_store.find_entity_candidates(
            user_id, entity.name, entity.type, exclude_id=entity.id
        )

        best, best_score = None, -1.0
        for candidate in candidates:
            if candidate.get("isDuplicate"):
                continue
            embedding = candidate.get("embedding")
            if not embedding:
                continue
            score = cosine_similarity(entity.embedding, embedding)
            logger.debug(f"Similarity {entity.name} ~ {candidate.get('name')}: {score:.3f}")
            if score >= self.similarity_threshold and score > best_score:
                best, best_score = candidate, score
        return best

    async def _merge_entities(self, incoming: Entity, existing_record: Dict[str, Any]) -> Entity:
        existing = Entity.from_record(existing_record)
        canonical_id = existing.canonical_id or existing.id

        properties = existing.properties.merged(incoming.properties)
        properties.last_updated = utc_now_iso()

        aliases = []
        for alias in existing.aliases + [incoming.name]:
            if alias and alias not in aliases:
                aliases.append(alias)

        await self.graph_store.merge_entity_properties(existing.id, {**properties.to_dict(), "aliases": aliases})
        if incoming.id != existing.id:
            await self.graph_store.mark_duplicate(incoming.id, canonical_id)

        logger.info(f"Merged entity {incoming.name} ({incoming.id}) into {canonical_id}")
        return Entity(
            id=canonical_id,
            name=incoming.name,
            type=incoming.type,
            description=incoming.description or existing.description,
            properties=properties,
            embedding=incoming.embedding,
            aliases=aliases,
            canonical_id=canonical_id,
        )

    async def write_relationships(self, relationships: List[Relationship]) -> int:
        """Upsert relationships into the store, skipping self-loops. Returns the number written."""
        written = 0
        for relationship in relationships:
            if relationship.is_self_loop:
                logger.debug(f"Dropping self-loop relationship {relationship.id}")
                continue
            stored = await self.graph_store.upsert_relationship(
                relationship.source_id,
                relationship.target_id,
                relationship.type,
                relationship.properties.to_dict(),
            )
            if stored is not None:
                written += 1
        logger.info(f"Wrote {written} of {len(relationships)} relationships")
        return written

    async def deduplicate_relationships(self, user_id: str) -> int:
        removed = await self.graph_store.delete_duplicate_relationships(user_id)
        logger.info(f"Deduplicated {removed} relationships for user {user_id}")
        return removed

    # ------------------------------------------------------------------
    # Graph views
    # ------------------------------------------------------------------

    def _assemble(self, scope: str, entities: List[Dict[str, Any]], relationships: List[Dict[str, Any]]) -> KnowledgeGraph:
        graph = KnowledgeGraph(scope=scope)
        for entity in entities:
            node = _node_from_entity(entity)
            if node is not None:
                graph.add_node(node)
        for relationship in relationships:
            self._add_relationship(graph, relationship)
        return graph

    def _add_relationship(self, graph: KnowledgeGraph, relationship: Dict[str, Any]) -> bool:
        properties = dict(relationship.get("properties") or {})
        if properties.get("confidence") is None:
            properties["confidence"] = self.default_edge_confidence
        source, target = relationship.get("source"), relationship.get("target")
        edge = sanitize_edge({
            "id": f"{source}-{relationship.get('type')}-{target}",
            "source": source,
            "target": target,
            "type": relationship.get("type"),
            "properties": properties,
        })
        return edge is not None and graph.add_edge(edge)

    async def _cached_graph(self, key: str) -> Optional[KnowledgeGraph]:
        cached = await self.cache.get(key)
        if not cached:
            return None
        logger.info(f"Graph cache hit: {key}")
        return KnowledgeGraph.from_dict(cached)

    async def build_central_graph(self, user_id: str) -> KnowledgeGraph:
        """Whole-corpus graph for a user, capped for response size."""
        cache_key = make_cache_key("central-kg", user_id)
        cached = await self._cached_graph(cache_key)
        if cached is not None:
            return cached

        entities = await self.graph_store.fetch_user_entities(user_id, self.central_entity_limit)
        relationships = await self.graph_store.fetch_user_relationships(user_id, self.central_relationship_limit)
        graph = self._assemble("user", entities, relationships)

        logger.info(f"Central graph for {user_id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
        await self.cache.set(cache_key, graph.to_dict(), self.central_cache_ttl)
        return graph

    async def build_document_graph(self, user_id: str, document_id: str) -> KnowledgeGraph:
        """Graph restricted to entities contained in one document."""
        cache_key = make_cache_key("document-kg", user_id, document_id)
        cached = await self._cached_graph(cache_key)
        if cached is not None:
            return cached

        entities = await self.graph_store.fetch_document_entities(user_id, document_id)
        relationships = await self.graph_store.fetch_document_relationships(user_id, document_id)
        graph = self._assemble("document", entities, relationships)

        logger.info(f"Document graph for {document_id}: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
        await self.cache.set(cache_key, graph.to_dict(), self.document_cache_ttl)
        return graph

    async def build_query_graph(self, user_id: str, query: str, entity_ids: Optional[List[str]] = None) -> KnowledgeGraph:
        """
        Graph of entities relevant to one question.

        With seed entity ids the seeds are expanded by one hop. Without seeds,
        entities whose name or description contains a query keyword become the
        seeds and are expanded by up to two hops.
        """
        seeds = [str(i) for i in (entity_ids or []) if i]
        cache_key = make_cache_key("query-kg", user_id, hashed=f"{query}|{','.join(sorted(seeds))}")
        cached = await self._cached_graph(cache_key)
        if cached is not None:
            return cached

        if seeds:
            rows = await self.graph_store.fetch_query_neighbourhood(user_id, seeds, depth=1)
        else:
            keywords = extract_query_keywords(query, self.query_keyword_limit)
            logger.info(f"No seed entities, using keywords {keywords}")
            rows = await self.graph_store.fetch_keyword_neighbourhood(
                user_id, keywords, depth=2, seed_limit=self.query_seed_limit
            )

        graph = KnowledgeGraph(scope="query")
        pending = []
        for row in rows:
            node = _node_from_entity(row.get("entity") or {})
            if node is not None:
                graph.add_node(node)
            for path in row.get("paths") or []:
                for entity in path.get("nodes") or []:
                    path_node = _node_from_entity(entity)
                    if path_node is not None:
                        graph.add_node(path_node)
                pending.extend(path.get("relationships") or [])

        for relationship in pending:
            self._add_relationship(graph, relationship)

        logger.info(f"Query graph: {len(graph.nodes)} nodes, {len(graph.edges)} edges")
        await self.cache.set(cache_key, graph.to_dict(), self.query_cache_ttl)
        return graph

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    async def get_statistics(self, user_id: str) -> Dict[str, Any]:
        counts = await self.graph_store.get_type_counts(user_id)
        entity_types = counts.get("entity_types", {})
        relationship_types = counts.get("relationship_types", {})
        return {
            "total_entities": sum(entity_types.values()),
            "total_relationships": sum(relationship_types.values()),
            "entity_types": entity_types,
            "relationship_types": relationship_types,
        }

    async def get_hubs(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        hubs = []
        for row in await self.graph_store.find_hubs(user_id, limit):
            node = _node_from_entity(row.get("entity") or {})
            if node is None:
                continue
            hubs.append({
                "node": node.to_dict(),
                "connection_count": int(row.get("connectionCount") or 0),
                "incoming_count": int(row.get("incomingCount") or 0),
                "outgoing_count": int(row.get("outgoingCount") or 0),
            })
        return hubs

    async def get_centrality(self, user_id: str, entity_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        rows = await self.graph_store.degree_centrality(user_id, entity_ids)
        degrees = [int(row.get("degreeCentrality") or 0) for row in rows]
        max_degree = max(degrees + [1])
        centrality = []
        for row, degree in zip(rows, degrees):
            node = _node_from_entity(row.get("entity") or {})
            if node is not None:
                centrality.append({"node": node.to_dict(), "degree": degree, "importance": degree / max_degree})
        return centrality

    def analyze(self, graph: KnowledgeGraph) -> Dict[str, Any]:
        return {
            "stats": calculate_graph_stats(graph),
            "validation": validate_graph(graph).to_dict(),
        }
