"""
Shared fixtures and in-memory stand-ins for the backends.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from docgraph.cache import Cache


class MemoryCache(Cache):
    """Dict-backed cache recording every write."""

    def __init__(self):
        self.store = {}
        self.ttls = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ttl):
        self.store[key] = value
        self.ttls[key] = ttl


@pytest.fixture
def cache():
    return MemoryCache()


@pytest.fixture
def llm_manager():
    manager = Mock()
    manager.complete = AsyncMock(return_value="")
    manager.complete_json = AsyncMock(return_value={})
    manager.embed = AsyncMock(return_value=[0.1, 0.2, 0.3])
    return manager


@pytest.fixture
def vector_store():
    store = Mock()
    store.query = AsyncMock(return_value=[])
    return store


@pytest.fixture
def graph_store():
    store = Mock()
    store.search_entities = AsyncMock(return_value=[])
    store.get_entity_relationships = AsyncMock(return_value=[])
    store.find_paths = AsyncMock(return_value=[])
    store.execute_cypher = AsyncMock(return_value=[])
    store.find_entity_candidates = AsyncMock(return_value=[])
    store.merge_entity_properties = AsyncMock(return_value=None)
    store.mark_duplicate = AsyncMock(return_value=None)
    store.upsert_relationship = AsyncMock(return_value="rel-1")
    store.delete_duplicate_relationships = AsyncMock(return_value=0)
    store.fetch_user_entities = AsyncMock(return_value=[])
    store.fetch_user_relationships = AsyncMock(return_value=[])
    store.fetch_document_entities = AsyncMock(return_value=[])
    store.fetch_document_relationships = AsyncMock(return_value=[])
    store.fetch_query_neighbourhood = AsyncMock(return_value=[])
    store.fetch_keyword_neighbourhood = AsyncMock(return_value=[])
    store.get_type_counts = AsyncMock(return_value={"entity_types": {}, "relationship_types": {}})
    store.find_hubs = AsyncMock(return_value=[])
    store.degree_centrality = AsyncMock(return_value=[])
    return store
