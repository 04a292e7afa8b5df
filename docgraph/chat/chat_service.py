"""
Chat service turning reasoning progress into a typed client event stream.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from .models import ChatEvent, Source
from ..kg.graph_processor import GraphProcessor
from ..reasoning.models import FinalAnswer, ReasoningError
from ..reasoning.reasoning_engine import ReasoningEngine
from ..router.models import QueryContext, ToolResult, ToolType

logger = logging.getLogger(__name__)

HistorySink = Callable[[str, str, str, str, Dict[str, Any]], Awaitable[Any]]

MAX_GRAPH_SEEDS = 10
SOURCE_LIMIT = 5
EXCERPT_LENGTH = 200


def extract_sources(tool_results: List[ToolResult]) -> List[Source]:
    """Top vector hits and entity hits as citable sources."""
    sources = []
    for result in tool_results:
        if not isinstance(result.data, list):
            continue

        if result.tool == ToolType.VECTOR_SEARCH:
            for match in result.data[:SOURCE_LIMIT]:
                content = getattr(match, "content", "")
                if content:
                    sources.append(Source(
                        type="vector",
                        file_name=getattr(match, "file_name", "") or "Unknown",
                        content=content[:EXCERPT_LENGTH] + "...",
                        score=getattr(match, "score", None),
                    ))

        elif result.tool == ToolType.ENTITY_SEARCH:
            for row in result.data[:SOURCE_LIMIT]:
                entity = row.get("entity") or {}
                if entity:
                    sources.append(Source(
                        type="graph",
                        file_name=row.get("fileName") or "Knowledge Graph",
                        entity=entity.get("name"),
                        entity_type=entity.get("type"),
                    ))
    return sources


def collect_entity_ids(tool_results: List[ToolResult], limit: int = MAX_GRAPH_SEEDS) -> List[str]:
    """Entity ids referenced by entity search, path and traversal results."""
    ids: List[str] = []

    def add(entity: Optional[Dict[str, Any]]):
        entity_id = (entity or {}).get("id")
        if entity_id and entity_id not in ids:
            ids.append(str(entity_id))

    for result in tool_results:
        if not isinstance(result.data, list):
            continue
        for item in result.data:
            if result.tool == ToolType.ENTITY_SEARCH:
                add(item.get("entity"))
            elif result.tool == ToolType.RELATIONSHIP_PATH:
                for node in item.get("nodes") or []:
                    add(node)
            elif result.tool == ToolType.GRAPH_TRAVERSAL:
                add(item.get("source"))
                add(item.get("target"))
    return ids[:limit]


class ChatService:
    """Single streaming entry point for chat clients."""

    def __init__(
        self,
        engine: ReasoningEngine,
        graph_processor: GraphProcessor,
        history_sink: Optional[HistorySink] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        chunk_delay: float = 0.0
    ):
        self.engine = engine
        self.graph_processor = graph_processor
        self.history_sink = history_sink
        self.on_error = on_error
        self.chunk_delay = chunk_delay
        self._pending = set()

    async def stream(self, context: QueryContext, session_id: Optional[str] = None) -> AsyncIterator[ChatEvent]:
        """
        Answer a question as a stream of chat events.

        Events arrive in the order thinking, reasoning/tool/refinement,
        chunk, sources, knowledge_graph, metadata. A failed reasoning run
        ends the stream with a single error event.
        """
        session_id = session_id or f"{context.user_id}_{int(time.time() * 1000)}"
        yield ChatEvent("thinking", {"message": "Analyzing your query..."})

        final: Optional[FinalAnswer] = None
        reasoning = self.engine.stream_reasoning(context)
        try:
            async for chunk in reasoning:
                if chunk.type == "reasoning_step":
                    yield ChatEvent("reasoning", {"step": chunk.data.to_dict()})
                elif chunk.type == "tool_execution":
                    yield ChatEvent("tool", {"tool": chunk.data})
                elif chunk.type == "refinement":
                    yield ChatEvent("refinement", {"data": chunk.data})
                elif chunk.type == "final_answer":
                    final = chunk.data
        except ReasoningError as e:
            logger.error(f"Reasoning failed for session {session_id}: {e}")
            yield ChatEvent("error", {"message": str(e)})
            return
        finally:
            await reasoning.aclose()

        if final is None:
            yield ChatEvent("error", {"message": "Reasoning produced no answer"})
            return

        for word in final.answer.split(" "):
            yield ChatEvent("chunk", {"content": word + " "})
            if self.chunk_delay:
                await asyncio.sleep(self.chunk_delay)

        sources = [s.to_dict() for s in extract_sources(final.tool_results)]
        yield ChatEvent("sources", {"sources": sources})

        graph_data = None
        entity_ids = collect_entity_ids(final.tool_results)
        if entity_ids:
            try:
                graph = await self.graph_processor.build_query_graph(context.user_id, context.query, entity_ids)
            except Exception as e:
                logger.warning(f"Query graph construction failed: {e}")
                graph = None
            if graph is not None and len(graph.nodes) > 0:
                graph_data = graph.to_dict()
                yield ChatEvent("knowledge_graph", {"graph": graph_data})

        yield ChatEvent("metadata", {"sessionId": session_id, "timestamp": int(time.time() * 1000)})

        self._persist_history(context, session_id, final, sources, graph_data)

    def _persist_history(self, context: QueryContext, session_id: str, final: FinalAnswer, sources, graph_data):
        if self.history_sink is None:
            return
        self._spawn(self.history_sink(
            context.user_id, session_id, "user", context.query,
            {"documentIds": context.document_ids},
        ))
        self._spawn(self.history_sink(
            context.user_id, session_id, "assistant", final.answer,
            {"sources": sources, "knowledgeGraph": graph_data, "documentIds": context.document_ids},
        ))

    def _spawn(self, coroutine: Awaitable[Any]):
        task = asyncio.ensure_future(self._guard(coroutine))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _guard(self, coroutine: Awaitable[Any]):
        try:
            await coroutine
        except Exception as e:
            logger.warning(f"Failed to persist chat message: {e}")
            if self.on_error is not None:
                self.on_error(e)

    async def drain(self):
        """Wait for outstanding history writes."""
        if self._pending:
            await asyncio.gather(*list(self._pending))
