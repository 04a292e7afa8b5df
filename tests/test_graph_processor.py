"""
Tests for entity resolution and scoped graph construction.
"""

import pytest

from docgraph.cache import make_cache_key
from docgraph.kg.graph_processor import GraphProcessor, extract_query_keywords
from docgraph.kg.graph_utils import validate_graph
from docgraph.kg.models import Entity, EntityProperties, Relationship


def stored_entity(entity_id, name, entity_type="ORGANIZATION", embedding=None, **extra):
    return {"id": entity_id, "name": name, "type": entity_type, "embedding": embedding or [1.0, 0.0], **extra}


def rel(source, target, rel_type="RELATED_TO", **properties):
    return {"source": source, "target": target, "type": rel_type, "properties": properties}


@pytest.fixture
def processor(graph_store, llm_manager, cache):
    return GraphProcessor({}, graph_store, llm_manager, cache)


class TestKeywords:
    """Test query keyword extraction."""

    def test_extraction(self):
        assert extract_query_keywords("What does Acme's Widget division make?") == ["acme", "widget", "division", "make"]

    def test_limit_and_dedup(self):
        assert extract_query_keywords("alpha alpha bravo charlie delta", limit=2) == ["alpha", "bravo"]


class TestEntityResolution:
    """Test similarity-based entity merging."""

    @pytest.mark.asyncio
    async def test_merges_above_threshold(self, processor, graph_store):
        graph_store.find_entity_candidates.return_value = [
            stored_entity("acme-1", "Acme Corporation", embedding=[1.0, 0.0], aliases=["ACME"], confidence=0.6),
        ]
        incoming = Entity(
            id="acme-2",
            name="Acme Corp",
            type="ORGANIZATION",
            properties=EntityProperties(confidence=0.9),
            embedding=[0.9, 0.1],
        )

        resolved = await processor.resolve_entities("user-1", [incoming])

        assert resolved[0].id == "acme-1"
        assert resolved[0].canonical_id == "acme-1"
        assert resolved[0].aliases == ["ACME", "Acme Corp"]
        entity_id, properties = graph_store.merge_entity_properties.await_args.args
        assert entity_id == "acme-1"
        assert properties["confidence"] == 0.9
        assert properties["aliases"] == ["ACME", "Acme Corp"]
        assert "lastUpdated" in properties
        graph_store.mark_duplicate.assert_awaited_once_with("acme-2", "acme-1")
        graph_store.find_entity_candidates.assert_awaited_once_with(
            "user-1", "Acme Corp", "ORGANIZATION", exclude_id="acme-2"
        )

    @pytest.mark.asyncio
    async def test_keeps_entity_below_threshold(self, processor, graph_store):
        # cosine([1, 0], [0.8, 0.6]) == 0.8
        graph_store.find_entity_candidates.return_value = [stored_entity("acme-1", "Acme", embedding=[0.8, 0.6])]
        incoming = Entity(id="acme-2", name="Acme Labs", type="ORGANIZATION", embedding=[1.0, 0.0])

        resolved = await processor.resolve_entities("user-1", [incoming])

        assert resolved[0] is incoming
        assert resolved[0].canonical_id is None
        graph_store.merge_entity_properties.assert_not_awaited()
        graph_store.mark_duplicate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_picks_most_similar_candidate(self, processor, graph_store):
        graph_store.find_entity_candidates.return_value = [
            stored_entity("a", "Acme", embedding=[0.9, 0.1]),
            stored_entity("b", "Acme Inc", embedding=[1.0, 0.0]),
            stored_entity("c", "Acme", embedding=[1.0, 0.0], isDuplicate=True),
        ]
        incoming = Entity(id="x", name="Acme", type="ORGANIZATION", embedding=[1.0, 0.0])

        resolved = await processor.resolve_entities("user-1", [incoming])

        assert resolved[0].id == "b"

    @pytest.mark.asyncio
    async def test_missing_embedding_is_generated(self, processor, llm_manager):
        incoming = Entity(id="x", name="Acme", type="ORGANIZATION", description="Widget maker")

        await processor.resolve_entities("user-1", [incoming])

        llm_manager.embed.assert_awaited_once_with("Acme ORGANIZATION Widget maker")
        assert incoming.embedding == [0.1, 0.2, 0.3]

    @pytest.mark.asyncio
    async def test_resolution_is_idempotent(self, processor, graph_store):
        graph_store.find_entity_candidates.return_value = [stored_entity("acme-1", "Acme", embedding=[1.0, 0.0])]

        first = await processor.resolve_entities(
            "user-1", [Entity(id="acme-2", name="Acme Corp", type="ORGANIZATION", embedding=[1.0, 0.0])]
        )
        second = await processor.resolve_entities(
            "user-1", [Entity(id="acme-2", name="Acme Corp", type="ORGANIZATION", embedding=[1.0, 0.0])]
        )

        assert first[0].id == second[0].id == "acme-1"

    @pytest.mark.asyncio
    async def test_merging_into_itself_is_not_marked_duplicate(self, processor, graph_store):
        graph_store.find_entity_candidates.return_value = [stored_entity("acme-1", "Acme", embedding=[1.0, 0.0])]
        incoming = Entity(id="acme-1", name="Acme", type="ORGANIZATION", embedding=[1.0, 0.0])

        await processor.resolve_entities("user-1", [incoming])

        graph_store.mark_duplicate.assert_not_awaited()


class TestRelationshipWrites:
    """Test relationship persistence."""

    @pytest.mark.asyncio
    async def test_self_loops_are_skipped(self, processor, graph_store):
        relationships = [
            Relationship(id="r1", source_id="a", target_id="b", type="works for",
                         properties=EntityProperties(confidence=0.7)),
            Relationship(id="r2", source_id="a", target_id="a", type="KNOWS"),
        ]

        written = await processor.write_relationships(relationships)

        assert written == 1
        graph_store.upsert_relationship.assert_awaited_once_with("a", "b", "WORKS_FOR", {"confidence": 0.7})

    @pytest.mark.asyncio
    async def test_deduplicate(self, processor, graph_store):
        graph_store.delete_duplicate_relationships.return_value = 4

        assert await processor.deduplicate_relationships("user-1") == 4


class TestGraphViews:
    """Test central, document and query graphs."""

    @pytest.mark.asyncio
    async def test_central_graph(self, processor, graph_store, cache):
        graph_store.fetch_user_entities.return_value = [
            stored_entity("a", "Acme"),
            stored_entity("b", "Widgetco"),
            {"name": "no id"},
        ]
        graph_store.fetch_user_relationships.return_value = [
            rel("a", "b", "SUPPLIES", confidence=0.95),
            rel("b", "a", "SUPPLIES"),
            rel("a", "a", "SELF"),
            rel("a", "ghost"),
        ]

        graph = await processor.build_central_graph("user-1")

        assert [n.id for n in graph.nodes] == ["a", "b"]
        assert [(e.source, e.target, e.type) for e in graph.edges] == [("a", "b", "SUPPLIES")]
        assert graph.edges[0].properties["confidence"] == 0.95
        assert graph.edges[0].id == "a-SUPPLIES-b"
        assert "embedding" not in graph.nodes[0].properties
        assert graph.scope == "user"
        graph_store.fetch_user_entities.assert_awaited_once_with("user-1", 500)
        assert make_cache_key("central-kg", "user-1") in cache.store

    @pytest.mark.asyncio
    async def test_central_graph_cache_hit(self, processor, graph_store):
        graph_store.fetch_user_entities.return_value = [stored_entity("a", "Acme")]

        await processor.build_central_graph("user-1")
        cached = await processor.build_central_graph("user-1")

        assert [n.id for n in cached.nodes] == ["a"]
        assert graph_store.fetch_user_entities.await_count == 1

    @pytest.mark.asyncio
    async def test_document_graph(self, processor, graph_store):
        graph_store.fetch_document_entities.return_value = [stored_entity("a", "Acme"), stored_entity("b", "Widgetco")]
        graph_store.fetch_document_relationships.return_value = [rel("a", "b")]

        graph = await processor.build_document_graph("user-1", "doc-1")

        assert graph.scope == "document"
        assert graph.edges[0].properties["confidence"] == 0.8
        graph_store.fetch_document_entities.assert_awaited_once_with("user-1", "doc-1")

    @pytest.mark.asyncio
    async def test_query_graph_from_seeds(self, processor, graph_store):
        graph_store.fetch_query_neighbourhood.return_value = [{
            "entity": stored_entity("acme", "Acme"),
            "paths": [{
                "nodes": [stored_entity("acme", "Acme"), stored_entity("widgetco", "Widgetco")],
                "relationships": [rel("acme", "widgetco", "SUPPLIES")],
            }],
        }]

        graph = await processor.build_query_graph("user-1", "Who does Acme supply?", ["acme"])

        assert graph.scope == "query"
        assert {n.id for n in graph.nodes} == {"acme", "widgetco"}
        assert len(graph.edges) == 1
        graph_store.fetch_query_neighbourhood.assert_awaited_once_with("user-1", ["acme"], depth=1)
        graph_store.fetch_keyword_neighbourhood.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_query_graph_keyword_fallback(self, processor, graph_store):
        graph_store.fetch_keyword_neighbourhood.return_value = [{
            "entity": stored_entity("acme", "Acme"),
            "paths": [{
                "nodes": [
                    stored_entity("acme", "Acme"),
                    stored_entity("widgetco", "Widgetco"),
                    stored_entity("jane", "Jane Doe", "PERSON"),
                ],
                "relationships": [rel("acme", "widgetco", "SUPPLIES"), rel("widgetco", "jane", "EMPLOYS")],
            }],
        }]

        graph = await processor.build_query_graph("user-1", "What does Acme supply?")

        graph_store.fetch_keyword_neighbourhood.assert_awaited_once_with(
            "user-1", ["acme", "supply"], depth=2, seed_limit=10
        )
        node_ids = {n.id for n in graph.nodes}
        assert node_ids == {"acme", "widgetco", "jane"}
        assert len(graph.edges) == 2
        for edge in graph.edges:
            assert edge.source in node_ids and edge.target in node_ids
        assert validate_graph(graph).is_valid

    @pytest.mark.asyncio
    async def test_query_graph_empty(self, processor):
        graph = await processor.build_query_graph("user-1", "What is this?")

        assert graph.nodes == []
        assert graph.edges == []


class TestAnalytics:
    """Test store-backed statistics."""

    @pytest.mark.asyncio
    async def test_statistics(self, processor, graph_store):
        graph_store.get_type_counts.return_value = {
            "entity_types": {"PERSON": 3, "ORGANIZATION": 2},
            "relationship_types": {"WORKS_FOR": 4},
        }

        stats = await processor.get_statistics("user-1")

        assert stats["total_entities"] == 5
        assert stats["total_relationships"] == 4

    @pytest.mark.asyncio
    async def test_hubs(self, processor, graph_store):
        graph_store.find_hubs.return_value = [{
            "entity": stored_entity("acme", "Acme"),
            "connectionCount": 7,
            "incomingCount": 3,
            "outgoingCount": 4,
        }]

        hubs = await processor.get_hubs("user-1", limit=1)

        assert hubs[0]["node"]["id"] == "acme"
        assert hubs[0]["connection_count"] == 7

    @pytest.mark.asyncio
    async def test_centrality(self, processor, graph_store):
        graph_store.degree_centrality.return_value = [
            {"entity": stored_entity("a", "A"), "degreeCentrality": 4},
            {"entity": stored_entity("b", "B"), "degreeCentrality": 2},
        ]

        centrality = await processor.get_centrality("user-1")

        assert [c["importance"] for c in centrality] == [1.0, 0.5]
