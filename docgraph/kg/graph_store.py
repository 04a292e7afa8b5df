"""
Neo4j graph store for entities, relationships and scoped graph reads.

Assumed schema:
    (:User {id})-[:OWNS]->(:Document {id, fileName})-[:CONTAINS]->(:Entity)
with typed relationships between Entity nodes. Entities flagged with
``isDuplicate`` are excluded from every read.
"""

import json
import logging
import os
import re
from typing import List, Dict, Any, Optional

from neo4j import READ_ACCESS, AsyncGraphDatabase

from .models import sanitize_relationship_type
from ..models.llm_manager import resolve_env_vars
from ..rag.vector_store import cosine_similarity

logger = logging.getLogger(__name__)

ENTITY_SEARCH_STOPWORDS = {
    "what", "where", "when", "which", "who", "how", "does", "about", "the", "and",
    "with", "from", "that", "this", "can", "you", "provide",
}

_NOT_DUPLICATE = "coalesce({var}.isDuplicate, false) = false"
_USER_ENTITIES = "MATCH (u:User {{id: $userId}})-[:OWNS]->(d:Document)-[:CONTAINS]->({var}:Entity)"

_REL_MAP = (
    "{{source: startNode({rel}).id, target: endNode({rel}).id, "
    "type: type({rel}), properties: properties({rel})}}"
)

_CODE_FENCE_START = re.compile(r"^```(?:cypher)?\s*\n?", re.IGNORECASE)
_CODE_FENCE_END = re.compile(r"\n?```\s*$")


def extract_search_keywords(query: str) -> List[str]:
    """Content words longer than two characters used for entity keyword search."""
    words = re.findall(r"[a-z0-9]+", (query or "").lower())
    keywords = []
    for word in words:
        if len(word) > 2 and word not in ENTITY_SEARCH_STOPWORDS and word not in keywords:
            keywords.append(word)
    return keywords


def strip_code_fences(query: str) -> str:
    cleaned = (query or "").strip()
    if cleaned.startswith("```"):
        cleaned = _CODE_FENCE_START.sub("", cleaned)
        cleaned = _CODE_FENCE_END.sub("", cleaned)
    return cleaned.strip()


def flatten_properties(properties: Dict[str, Any]) -> Dict[str, Any]:
    """Neo4j accepts primitives and homogeneous lists only; nested values become JSON."""
    flat = {}
    for key, value in (properties or {}).items():
        if value is None:
            continue
        if isinstance(value, (str, int, float, bool)):
            flat[key] = value
        elif isinstance(value, (list, tuple)) and all(isinstance(v, (str, int, float, bool)) for v in value):
            flat[key] = list(value)
        else:
            flat[key] = json.dumps(value, default=str)
    return flat


def _without_embedding(entity: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (entity or {}).items() if k != "embedding"}


def _depth(value: Any, default: int, maximum: int = 6) -> int:
    try:
        depth = int(value)
    except (TypeError, ValueError):
        depth = default
    return max(1, min(depth, maximum))


class Neo4jGraphStore:
    """Async Neo4j access for graph reasoning and entity resolution."""

    def __init__(self, config: Dict[str, Any], driver=None):
        self.config = config
        self.database = resolve_env_vars(config.get("database") or "") or os.getenv("NEO4J_DATABASE") or None

        if driver is not None:
            self.driver = driver
        else:
            uri = resolve_env_vars(config.get("uri") or "") or os.getenv("NEO4J_URI")
            username = resolve_env_vars(config.get("username") or "") or os.getenv("NEO4J_USERNAME", "neo4j")
            password = resolve_env_vars(config.get("password") or "") or os.getenv("NEO4J_PASSWORD")
            if not uri or not password:
                raise ValueError("Neo4j URI and password must be provided")
            self.driver = AsyncGraphDatabase.driver(uri, auth=(username, password))
            logger.info(f"Neo4j driver created for {uri}")

    async def _run(self, query: str, **params) -> List[Dict[str, Any]]:
        async with self.driver.session(database=self.database) as session:
            result = await session.run(query, params)
            return await result.data()

    async def _run_read_only(self, query: str, **params) -> List[Dict[str, Any]]:
        async with self.driver.session(database=self.database, default_access_mode=READ_ACCESS) as session:
            result = await session.run(query, params)
            return await result.data()

    async def close(self):
        await self.driver.close()

    # ------------------------------------------------------------------
    # Retrieval tools
    # ------------------------------------------------------------------

    async def search_entities(
        self,
        user_id: str,
        query: str,
        document_ids: Optional[List[str]] = None,
        limit: int = 15
    ) -> List[Dict[str, Any]]:
        """
        Keyword search over entity names and descriptions.

        Relevance is twice the number of keywords found in the name, plus the
        number found in the description, plus 20 for an exact name match and 3
        for short (at most two word) names.

        Returns:
            Rows of ``{entity, fileName, documentId, relevance}``
        """
        keywords = extract_search_keywords(query)
        params: Dict[str, Any] = {"userId": user_id, "limit": int(limit), "keywords": keywords}

        cypher = f"{_USER_ENTITIES.format(var='e')}\nWHERE {_NOT_DUPLICATE.format(var='e')}"
        if document_ids:
            cypher += " AND d.id IN $documentIds"
            params["documentIds"] = list(document_ids)

        if keywords:
            cypher += """
            AND any(k IN $keywords WHERE toLower(e.name) CONTAINS k
                    OR toLower(coalesce(e.description, '')) CONTAINS k)
            WITH e, d,
                size([k IN $keywords WHERE toLower(e.name) CONTAINS k]) * 2 +
                size([k IN $keywords WHERE toLower(coalesce(e.description, '')) CONTAINS k]) +
                CASE WHEN any(k IN $keywords WHERE toLower(e.name) = k) THEN 20 ELSE 0 END +
                CASE WHEN size(split(toLower(e.name), ' ')) <= 2 THEN 3 ELSE 0 END AS relevance
            WHERE relevance > 0
            RETURN properties(e) AS entity, d.fileName AS fileName, d.id AS documentId, relevance
            ORDER BY relevance DESC, e.name ASC
            LIMIT $limit
            """
        else:
            cypher += """
            RETURN properties(e) AS entity, d.fileName AS fileName, d.id AS documentId, 1 AS relevance
            LIMIT $limit
            """

        rows = await self._run(cypher, **params)
        for row in rows:
            row["entity"] = _without_embedding(row.get("entity"))
        logger.debug(f"Entity search for '{query}' matched {len(rows)} entities")
        return rows

    async def get_entity_relationships(self, entity_id: str, depth: int = 1) -> List[Dict[str, Any]]:
        """Variable-length expansion around one entity."""
        hops = _depth(depth, 1)
        cypher = f"""
        MATCH (e:Entity {{id: $entityId}})-[r*1..{hops}]-(related:Entity)
        WHERE {_NOT_DUPLICATE.format(var='related')}
        RETURN properties(e) AS source,
               [rel IN r | {_REL_MAP.format(rel='rel')}] AS relationships,
               properties(related) AS target
        LIMIT 100
        """
        rows = await self._run(cypher, entityId=entity_id)
        for row in rows:
            row["source"] = _without_embedding(row.get("source"))
            row["target"] = _without_embedding(row.get("target"))
        return rows

    async def find_paths(
        self,
        user_id: str,
        entity1: str,
        entity2: str,
        max_depth: int = 5
    ) -> List[Dict[str, Any]]:
        """Shortest paths between entities matched by name substring or id."""
        hops = _depth(max_depth, 5, maximum=10)
        cypher = f"""
        {_USER_ENTITIES.format(var='e1')}
        MATCH (u)-[:OWNS]->(:Document)-[:CONTAINS]->(e2:Entity)
        WHERE (toLower(e1.name) CONTAINS toLower($entity1) OR e1.id = $entity1)
          AND (toLower(e2.name) CONTAINS toLower($entity2) OR e2.id = $entity2)
          AND e1 <> e2
          AND {_NOT_DUPLICATE.format(var='e1')} AND {_NOT_DUPLICATE.format(var='e2')}
        MATCH path = shortestPath((e1)-[*1..{hops}]-(e2))
        RETURN DISTINCT length(path) AS length,
               [n IN nodes(path) | properties(n)] AS nodes,
               [rel IN relationships(path) | {_REL_MAP.format(rel='rel')}] AS relationships
        ORDER BY length
        LIMIT 5
        """
        rows = await self._run(cypher, userId=user_id, entity1=entity1, entity2=entity2)
        for row in rows:
            row["nodes"] = [_without_embedding(n) for n in row.get("nodes") or []]
        return rows

    async def execute_cypher(self, query: str, parameters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Run a (possibly LLM generated) Cypher query in a read-only session."""
        cleaned = strip_code_fences(query)
        if not cleaned:
            return []
        return await self._run_read_only(cleaned, **(parameters or {}))

    async def semantic_entity_search(
        self,
        user_id: str,
        vector: List[float],
        top_k: int = 10,
        entity_types: Optional[List[str]] = None
    ) -> List[Dict[str, Any]]:
        """Rank stored entity embeddings by cosine similarity to vector."""
        params: Dict[str, Any] = {"userId": user_id}
        cypher = f"""
        {_USER_ENTITIES.format(var='e')}
        WHERE {_NOT_DUPLICATE.format(var='e')} AND e.embedding IS NOT NULL
        """
        if entity_types:
            cypher += " AND e.type IN $entityTypes"
            params["entityTypes"] = list(entity_types)
        cypher += " RETURN DISTINCT properties(e) AS entity LIMIT 100"

        rows = await self._run(cypher, **params)
        scored = []
        for row in rows:
            entity = row.get("entity") or {}
            similarity = cosine_similarity(vector, entity.get("embedding"))
            scored.append({"entity": _without_embedding(entity), "similarity": similarity})
        scored.sort(key=lambda item: item["similarity"], reverse=True)
        return scored[:top_k]

    # ------------------------------------------------------------------
    # Entity resolution writes
    # ------------------------------------------------------------------

    async def find_entity_candidates(
        self,
        user_id: str,
        name: str,
        entity_type: str,
        exclude_id: Optional[str] = None,
        limit: int = 5
    ) -> List[Dict[str, Any]]:
        """Same-type entities matching name exactly, by alias or by substring."""
        cypher = f"""
        {_USER_ENTITIES.format(var='e')}
        WHERE e.type = $type
          AND {_NOT_DUPLICATE.format(var='e')}
          AND ($excludeId IS NULL OR e.id <> $excludeId)
          AND (
            toLower(e.name) = toLower($name)
            OR $name IN coalesce(e.aliases, [])
            OR toLower(e.name) CONTAINS toLower($name)
          )
        RETURN DISTINCT properties(e) AS entity
        LIMIT $limit
        """
        rows = await self._run(
            cypher, userId=user_id, name=name, type=entity_type, excludeId=exclude_id, limit=int(limit)
        )
        return [row["entity"] for row in rows if row.get("entity")]

    async def merge_entity_properties(self, entity_id: str, properties: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        cypher = """
        MATCH (e:Entity {id: $entityId})
        SET e += $properties
        RETURN properties(e) AS entity
        """
        rows = await self._run(cypher, entityId=entity_id, properties=flatten_properties(properties))
        return _without_embedding(rows[0]["entity"]) if rows else None

    async def mark_duplicate(self, entity_id: str, canonical_id: str):
        cypher = """
        MERGE (e:Entity {id: $entityId})
        SET e.canonicalId = $canonicalId, e.isDuplicate = true
        """
        await self._run(cypher, entityId=entity_id, canonicalId=canonical_id)

    async def upsert_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: str,
        properties: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """Merge a typed relationship; self-loops are refused."""
        if source_id == target_id:
            logger.debug(f"Refusing self-loop relationship on {source_id}")
            return None

        rel_type = sanitize_relationship_type(relationship_type)
        cypher = f"""
        MATCH (source:Entity {{id: $sourceId}})
        MATCH (target:Entity {{id: $targetId}})
        MERGE (source)-[r:`{rel_type}`]->(target)
        SET r += $properties
        RETURN {_REL_MAP.format(rel='r')} AS relationship
        """
        rows = await self._run(
            cypher, sourceId=source_id, targetId=target_id, properties=flatten_properties(properties or {})
        )
        return rows[0]["relationship"] if rows else None

    async def delete_duplicate_relationships(self, user_id: str) -> int:
        """Keep one relationship per (source, type, target); return how many were deleted."""
        cypher = f"""
        {_USER_ENTITIES.format(var='e1')}
        MATCH (e1)-[r]->(e2:Entity)
        WITH e1, e2, type(r) AS relType, collect(DISTINCT r) AS rels
        WHERE size(rels) > 1
        FOREACH (rel IN tail(rels) | DELETE rel)
        RETURN coalesce(sum(size(rels) - 1), 0) AS removed
        """
        rows = await self._run(cypher, userId=user_id)
        return int(rows[0]["removed"]) if rows else 0

    # ------------------------------------------------------------------
    # Scoped graph reads
    # ------------------------------------------------------------------

    async def fetch_user_entities(self, user_id: str, limit: int = 500) -> List[Dict[str, Any]]:
        cypher = f"""
        {_USER_ENTITIES.format(var='e')}
        WHERE {_NOT_DUPLICATE.format(var='e')}
        RETURN DISTINCT properties(e) AS entity
        LIMIT $limit
        """
        rows = await self._run(cypher, userId=user_id, limit=int(limit))
        return [_without_embedding(row["entity"]) for row in rows]

    async def fetch_user_relationships(self, user_id: str, limit: int = 1000) -> List[Dict[str, Any]]:
        cypher = f"""
        {_USER_ENTITIES.format(var='e1')}
        MATCH (e1)-[r]->(e2:Entity)
        WHERE {_NOT_DUPLICATE.format(var='e1')} AND {_NOT_DUPLICATE.format(var='e2')}
        RETURN DISTINCT {_REL_MAP.format(rel='r')} AS relationship
        LIMIT $limit
        """
        rows = await self._run(cypher, userId=user_id, limit=int(limit))
        return [row["relationship"] for row in rows]

    async def fetch_document_entities(self, user_id: str, document_id: str) -> List[Dict[str, Any]]:
        cypher = f"""
        MATCH (u:User {{id: $userId}})-[:OWNS]->(d:Document {{id: $documentId}})-[:CONTAINS]->(e:Entity)
        WHERE {_NOT_DUPLICATE.format(var='e')}
        RETURN DISTINCT properties(e) AS entity
        """
        rows = await self._run(cypher, userId=user_id, documentId=document_id)
        return [_without_embedding(row["entity"]) for row in rows]

    async def fetch_document_relationships(self, user_id: str, document_id: str) -> List[Dict[str, Any]]:
        cypher = f"""
        MATCH (u:User {{id: $userId}})-[:OWNS]->(d:Document {{id: $documentId}})-[:CONTAINS]->(e1:Entity)
        MATCH (e1)-[r]->(e2:Entity)
        WHERE {_NOT_DUPLICATE.format(var='e1')} AND {_NOT_DUPLICATE.format(var='e2')}
        RETURN DISTINCT {_REL_MAP.format(rel='r')} AS relationship
        """
        rows = await self._run(cypher, userId=user_id, documentId=document_id)
        return [row["relationship"] for row in rows]

    async def _fetch_neighbourhood(self, match_clause: str, depth: int, **params) -> List[Dict[str, Any]]:
        hops = _depth(depth, 1, maximum=3)
        cypher = f"""
        {_USER_ENTITIES.format(var='e')}
        WHERE {_NOT_DUPLICATE.format(var='e')} AND {match_clause}
        WITH DISTINCT e LIMIT $seedLimit
        OPTIONAL MATCH path = (e)-[*1..{hops}]-(connected:Entity)
        WHERE all(n IN nodes(path) WHERE n:Entity AND {_NOT_DUPLICATE.format(var='n')})
        WITH e, collect(path)[..$pathLimit] AS paths
        RETURN properties(e) AS entity,
               [p IN paths | {{
                   nodes: [n IN nodes(p) | properties(n)],
                   relationships: [rel IN relationships(p) | {_REL_MAP.format(rel='rel')}]
               }}] AS paths
        """
        rows = await self._run(cypher, **params)
        for row in rows:
            row["entity"] = _without_embedding(row.get("entity"))
            for path in row.get("paths") or []:
                path["nodes"] = [_without_embedding(n) for n in path.get("nodes") or []]
        return rows

    async def fetch_query_neighbourhood(
        self,
        user_id: str,
        entity_ids: List[str],
        depth: int = 1,
        path_limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Seed entities by id with the paths leading out of them."""
        return await self._fetch_neighbourhood(
            "e.id IN $entityIds",
            depth,
            userId=user_id,
            entityIds=list(entity_ids),
            seedLimit=max(1, len(entity_ids)),
            pathLimit=int(path_limit),
        )

    async def fetch_keyword_neighbourhood(
        self,
        user_id: str,
        keywords: List[str],
        depth: int = 2,
        seed_limit: int = 10,
        path_limit: int = 25
    ) -> List[Dict[str, Any]]:
        """Entities whose name or description contains a keyword, with surrounding paths."""
        if not keywords:
            return []
        return await self._fetch_neighbourhood(
            "any(k IN $keywords WHERE toLower(e.name) CONTAINS k "
            "OR toLower(coalesce(e.description, '')) CONTAINS k)",
            depth,
            userId=user_id,
            keywords=[k.lower() for k in keywords],
            seedLimit=int(seed_limit),
            pathLimit=int(path_limit),
        )

    # ------------------------------------------------------------------
    # Statistics and centrality
    # ------------------------------------------------------------------

    async def get_type_counts(self, user_id: str) -> Dict[str, Dict[str, int]]:
        entity_rows = await self._run(f"""
        {_USER_ENTITIES.format(var='e')}
        WHERE {_NOT_DUPLICATE.format(var='e')}
        RETURN coalesce(e.type, 'UNKNOWN') AS type, count(DISTINCT e) AS count
        """, userId=user_id)
        relationship_rows = await self._run(f"""
        {_USER_ENTITIES.format(var='e1')}
        MATCH (e1)-[r]->(e2:Entity)
        WHERE {_NOT_DUPLICATE.format(var='e1')} AND {_NOT_DUPLICATE.format(var='e2')}
        RETURN type(r) AS type, count(DISTINCT r) AS count
        """, userId=user_id)
        return {
            "entity_types": {row["type"]: int(row["count"]) for row in entity_rows},
            "relationship_types": {row["type"]: int(row["count"]) for row in relationship_rows},
        }

    async def find_hubs(self, user_id: str, limit: int = 10) -> List[Dict[str, Any]]:
        cypher = f"""
        {_USER_ENTITIES.format(var='e')}
        WHERE {_NOT_DUPLICATE.format(var='e')}
        WITH DISTINCT e
        OPTIONAL MATCH (e)-[r_out]->(o:Entity) WHERE {_NOT_DUPLICATE.format(var='o')}
        WITH e, count(DISTINCT r_out) AS outgoing
        OPTIONAL MATCH (e)<-[r_in]-(i:Entity) WHERE {_NOT_DUPLICATE.format(var='i')}
        WITH e, outgoing, count(DISTINCT r_in) AS incoming
        WITH e, outgoing, incoming, outgoing + incoming AS total
        WHERE total > 0
        RETURN properties(e) AS entity, total AS connectionCount,
               incoming AS incomingCount, outgoing AS outgoingCount
        ORDER BY total DESC
        LIMIT $limit
        """
        rows = await self._run(cypher, userId=user_id, limit=int(limit))
        for row in rows:
            row["entity"] = _without_embedding(row.get("entity"))
        return rows

    async def degree_centrality(self, user_id: str, entity_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"userId": user_id}
        cypher = f"""
        {_USER_ENTITIES.format(var='e')}
        WHERE {_NOT_DUPLICATE.format(var='e')}
        """
        if entity_ids:
            cypher += " AND e.id IN $entityIds"
            params["entityIds"] = list(entity_ids)
        cypher += f"""
        WITH DISTINCT e
        OPTIONAL MATCH (e)-[r]-(other:Entity) WHERE {_NOT_DUPLICATE.format(var='other')}
        WITH e, count(DISTINCT r) AS degree
        RETURN properties(e) AS entity, degree AS degreeCentrality
        ORDER BY degree DESC
        LIMIT 50
        """
        rows = await self._run(cypher, **params)
        for row in rows:
            row["entity"] = _without_embedding(row.get("entity"))
        return rows
