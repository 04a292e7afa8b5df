"""
Tests for the streaming chat service.
"""

import json
from unittest.mock import AsyncMock, Mock

import pytest

from docgraph.chat.chat_service import ChatService, collect_entity_ids, extract_sources
from docgraph.chat.models import ChatEvent
from docgraph.kg.graph_processor import GraphProcessor
from docgraph.kg.models import GraphNode, KnowledgeGraph
from docgraph.rag.models import VectorMatch
from docgraph.reasoning.models import FinalAnswer, ReasoningChain, ReasoningError, ReasoningStep, StreamChunk
from docgraph.reasoning.reasoning_engine import ReasoningEngine
from docgraph.router.intent_classifier import INTENT_SYSTEM_PROMPT, IntentClassifier
from docgraph.router.models import QueryContext, ToolResult, ToolType
from docgraph.router.query_planner import QueryPlanner

ACME = {"id": "acme", "name": "Acme", "type": "ORGANIZATION", "description": "Holding company"}
WIDGETCO = {"id": "widgetco", "name": "Widgetco", "type": "ORGANIZATION", "description": "Widget maker"}


class FakeEngine:
    """Replays a fixed list of chunks, optionally failing afterwards."""

    def __init__(self, chunks, error=None):
        self.chunks = chunks
        self.error = error
        self.closed = False

    async def stream_reasoning(self, context):
        try:
            for chunk in self.chunks:
                yield chunk
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


def final_chunk(answer="Acme buys widgets from Widgetco.", tool_results=None):
    chain = ReasoningChain(query="q", steps=[], final_answer=answer, confidence=0.8)
    return StreamChunk("final_answer", FinalAnswer(answer, 0.8, chain, tool_results or []))


@pytest.fixture
def context():
    return QueryContext(user_id="user-1", query="Who supplies Acme?")


@pytest.fixture
def graph_processor():
    processor = Mock()
    processor.build_query_graph = AsyncMock(return_value=KnowledgeGraph(scope="query"))
    return processor


async def collect(service, context, session_id="session-1"):
    return [event async for event in service.stream(context, session_id)]


class TestSourceExtraction:
    """Test source and seed extraction from tool results."""

    def test_sources(self):
        results = [
            ToolResult("s1", ToolType.VECTOR_SEARCH, [
                VectorMatch("c1", 0.9, {"content": "x" * 300, "fileName": "acme.pdf"}),
                VectorMatch("c2", 0.5, {}),
            ], 0.7, 1.0),
            ToolResult("s2", ToolType.ENTITY_SEARCH, [{"entity": ACME, "fileName": "contracts.pdf"}], 0.8, 1.0),
        ]

        sources = [s.to_dict() for s in extract_sources(results)]

        assert sources[0]["type"] == "vector"
        assert sources[0]["fileName"] == "acme.pdf"
        assert sources[0]["content"] == "x" * 200 + "..."
        assert sources[0]["score"] == 0.9
        assert sources[1] == {
            "type": "graph",
            "fileName": "contracts.pdf",
            "entity": "Acme",
            "entityType": "ORGANIZATION",
        }
        assert len(sources) == 2

    def test_entity_ids(self):
        results = [
            ToolResult("s1", ToolType.ENTITY_SEARCH, [{"entity": ACME}], 0.8, 1.0),
            ToolResult("s2", ToolType.GRAPH_TRAVERSAL, [{"source": ACME, "relationships": [], "target": WIDGETCO}], 0.8, 1.0),
            ToolResult("s3", ToolType.RELATIONSHIP_PATH, [{"nodes": [WIDGETCO, {"id": "jane"}]}], 0.8, 1.0),
            ToolResult("s4", ToolType.VECTOR_SEARCH, [VectorMatch("c1", 0.9)], 0.9, 1.0),
        ]

        assert collect_entity_ids(results) == ["acme", "widgetco", "jane"]
        assert collect_entity_ids(results, limit=1) == ["acme"]


class TestChatEvents:
    """Test event models."""

    def test_unknown_event_type(self):
        with pytest.raises(ValueError):
            ChatEvent("progress")

    def test_sse_frame(self):
        frame = ChatEvent("chunk", {"content": "Hi "}).to_sse()

        assert frame.startswith("data: ")
        assert frame.endswith("\n\n")
        assert json.loads(frame[len("data: "):]) == {"type": "chunk", "content": "Hi "}


class TestChatStream:
    """Test event ordering and failure handling."""

    @pytest.mark.asyncio
    async def test_event_order(self, context, graph_processor):
        step = ReasoningStep(id="step-1", type="thought", content="Analyzing")
        engine = FakeEngine([
            StreamChunk("reasoning_step", step),
            StreamChunk("tool_execution", {"tool": "vector_search", "confidence": 0.9, "execution_time": 3.0, "result_count": 1}),
            StreamChunk("refinement", {"iteration": 1, "additional_results": 0}),
            final_chunk("Two words"),
        ])
        service = ChatService(engine, graph_processor)

        events = await collect(service, context)

        assert [e.type for e in events] == [
            "thinking", "reasoning", "tool", "refinement", "chunk", "chunk", "sources", "metadata",
        ]
        assert events[1].payload["step"]["content"] == "Analyzing"
        assert "".join(e.payload["content"] for e in events if e.type == "chunk") == "Two words "
        assert events[-1].payload["sessionId"] == "session-1"
        assert engine.closed
        graph_processor.build_query_graph.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_reasoning_error_ends_stream(self, context, graph_processor):
        step = ReasoningStep(id="step-1", type="thought", content="Analyzing")
        engine = FakeEngine([StreamChunk("reasoning_step", step)], error=ReasoningError("Answer synthesis failed"))
        sink = AsyncMock()
        service = ChatService(engine, graph_processor, history_sink=sink)

        events = await collect(service, context)

        assert [e.type for e in events] == ["thinking", "reasoning", "error"]
        assert events[-1].payload["message"] == "Answer synthesis failed"
        await service.drain()
        sink.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_final_answer(self, context, graph_processor):
        service = ChatService(FakeEngine([]), graph_processor)

        events = await collect(service, context)

        assert [e.type for e in events] == ["thinking", "error"]

    @pytest.mark.asyncio
    async def test_graph_failure_is_not_fatal(self, context, graph_processor):
        graph_processor.build_query_graph = AsyncMock(side_effect=RuntimeError("neo4j down"))
        results = [ToolResult("s1", ToolType.ENTITY_SEARCH, [{"entity": ACME}], 0.8, 1.0)]
        service = ChatService(FakeEngine([final_chunk("Done", results)]), graph_processor)

        events = await collect(service, context)

        assert [e.type for e in events] == ["thinking", "chunk", "sources", "metadata"]

    @pytest.mark.asyncio
    async def test_empty_graph_is_not_emitted(self, context, graph_processor):
        results = [ToolResult("s1", ToolType.ENTITY_SEARCH, [{"entity": ACME}], 0.8, 1.0)]
        service = ChatService(FakeEngine([final_chunk("Done", results)]), graph_processor)

        events = await collect(service, context)

        assert "knowledge_graph" not in [e.type for e in events]
        graph_processor.build_query_graph.assert_awaited_once_with("user-1", "Who supplies Acme?", ["acme"])

    @pytest.mark.asyncio
    async def test_history_is_persisted(self, context, graph_processor):
        graph = KnowledgeGraph(scope="query")
        graph.add_node(GraphNode("acme", "Acme", "ORGANIZATION"))
        graph_processor.build_query_graph = AsyncMock(return_value=graph)
        results = [ToolResult("s1", ToolType.ENTITY_SEARCH, [{"entity": ACME}], 0.8, 1.0)]
        sink = AsyncMock()
        service = ChatService(FakeEngine([final_chunk("Done", results)]), graph_processor, history_sink=sink)

        await collect(service, context)
        await service.drain()

        assert sink.await_count == 2
        user_call, assistant_call = sink.await_args_list
        assert user_call.args[:4] == ("user-1", "session-1", "user", "Who supplies Acme?")
        assert assistant_call.args[2:4] == ("assistant", "Done")
        assert assistant_call.args[4]["knowledgeGraph"]["metadata"]["entityCount"] == 1

    @pytest.mark.asyncio
    async def test_history_failure_is_reported(self, context, graph_processor):
        errors = []
        sink = AsyncMock(side_effect=RuntimeError("history store offline"))
        service = ChatService(
            FakeEngine([final_chunk("Done")]), graph_processor, history_sink=sink, on_error=errors.append
        )

        events = await collect(service, context)
        await service.drain()

        assert events[-1].type == "metadata"
        assert len(errors) == 2
        assert all(isinstance(e, RuntimeError) for e in errors)


class TestEndToEnd:
    """Question about an owned company through planner, engine and graph builder."""

    @pytest.fixture
    def llm_manager(self, llm_manager):
        async def complete_json(messages, **kwargs):
            if messages[0]["content"] == INTENT_SYSTEM_PROMPT:
                return {
                    "queryType": "relational",
                    "capabilities": ["entity_lookup", "graph_traversal"],
                    "complexity": "moderate",
                    "keyEntities": ["Acme", "Widgetco"],
                    "needsMultiHop": False,
                    "reasoning": "ownership relation of one organization",
                }
            return {"needsRefinement": False}

        llm_manager.complete_json = AsyncMock(side_effect=complete_json)
        llm_manager.complete = AsyncMock(return_value="Acme owns Widgetco.")
        return llm_manager

    @pytest.fixture
    def service(self, llm_manager, vector_store, graph_store, cache):
        graph_store.search_entities.return_value = [{"entity": ACME, "fileName": "contracts.pdf", "documentId": "doc-1"}]
        graph_store.get_entity_relationships.return_value = [{
            "source": ACME,
            "relationships": [{"type": "OWNS"}],
            "target": WIDGETCO,
        }]
        graph_store.fetch_query_neighbourhood.return_value = [
            {"entity": ACME, "paths": [{"nodes": [ACME, WIDGETCO], "relationships": [
                {"source": "acme", "target": "widgetco", "type": "OWNS", "properties": {}},
            ]}]},
            {"entity": WIDGETCO, "paths": [{"nodes": [WIDGETCO, ACME], "relationships": [
                {"source": "acme", "target": "widgetco", "type": "OWNS", "properties": {}},
            ]}]},
        ]

        classifier = IntentClassifier({}, llm_manager, cache)
        planner = QueryPlanner({}, llm_manager, vector_store, graph_store, intent_classifier=classifier)
        engine = ReasoningEngine({}, planner, llm_manager, cache)
        processor = GraphProcessor({}, graph_store, llm_manager, cache)
        return ChatService(engine, processor)

    @pytest.mark.asyncio
    async def test_relational_question(self, service, graph_store, vector_store, llm_manager):
        context = QueryContext(user_id="user-1", query="What companies does Acme own?")

        events = await collect(service, context)
        types = [e.type for e in events]

        assert types[0] == "thinking"
        assert [e.payload["tool"]["tool"] for e in events if e.type == "tool"] == ["entity_search", "graph_traversal"]
        assert types[-3:] == ["sources", "knowledge_graph", "metadata"]
        assert types.index("sources") > max(i for i, t in enumerate(types) if t == "chunk")
        assert "error" not in types

        answer = "".join(e.payload["content"] for e in events if e.type == "chunk").strip()
        assert answer == "Acme owns Widgetco."

        sources = next(e for e in events if e.type == "sources").payload["sources"]
        assert sources == [{"type": "graph", "fileName": "contracts.pdf", "entity": "Acme", "entityType": "ORGANIZATION"}]

        graph = next(e for e in events if e.type == "knowledge_graph").payload["graph"]
        assert {n["id"] for n in graph["nodes"]} == {"acme", "widgetco"}
        assert len(graph["edges"]) == 1
        assert graph["edges"][0]["properties"]["confidence"] == 0.8
        assert graph["metadata"]["scope"] == "query"

        graph_store.get_entity_relationships.assert_awaited_once_with("acme", 2)
        graph_store.fetch_query_neighbourhood.assert_awaited_once_with("user-1", ["acme", "widgetco"], depth=1)
        vector_store.query.assert_not_awaited()
        synthesis_prompt = llm_manager.complete.await_args.args[0][-1]["content"]
        assert "[Entity] Acme (ORGANIZATION): Holding company" in synthesis_prompt
        assert "[Relationship] Acme -> OWNS -> Widgetco" in synthesis_prompt

    @pytest.mark.asyncio
    async def test_answer_confidence_is_tool_average(self, service):
        context = QueryContext(user_id="user-1", query="What companies does Acme own?")

        chain = await service.engine.reason(context)

        assert "Widgetco" in chain.final_answer
        assert chain.confidence == pytest.approx(0.8)
        assert chain.tools_used == ["entity_search", "graph_traversal"]
