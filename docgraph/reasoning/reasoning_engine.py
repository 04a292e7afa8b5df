"""
Reasoning Engine: plans, executes, synthesizes and iteratively refines answers.
"""

import logging
import time
from typing import Dict, Any, List, Optional, AsyncIterator

from .models import (
    FinalAnswer,
    ReasoningChain,
    ReasoningError,
    ReasoningStep,
    RefinementDecision,
    StreamChunk,
)
from ..cache import Cache, NullCache, make_cache_key
from ..router.models import QueryContext, ToolResult, ToolType
from ..router.query_planner import QueryPlanner

logger = logging.getLogger(__name__)

NO_CONTEXT_ANSWER = "I couldn't find relevant information to answer your question based on your documents."

SYNTHESIS_SYSTEM_PROMPT = """You are a helpful AI assistant. Answer the user's question based on the provided context.
Be concise, accurate, and cite your sources when possible. If the context doesn't contain enough
information, acknowledge this clearly."""

REFINEMENT_SYSTEM_PROMPT = """You are a critical evaluator. Determine if the current answer needs refinement.
Return JSON:
{
  "needsRefinement": true|false,
  "reason": "explanation if refinement needed",
  "additionalQuery": "specific follow-up query to gather missing information"
}"""

DEFAULT_CONTEXT_LIMITS = {
    ToolType.VECTOR_SEARCH.value: 5,
    ToolType.ENTITY_SEARCH.value: 5,
    ToolType.GRAPH_TRAVERSAL.value: 5,
    ToolType.RELATIONSHIP_PATH.value: 3,
}


def overall_confidence(tool_results: List[ToolResult]) -> float:
    """Arithmetic mean of tool result confidences."""
    if not tool_results:
        return 0.0
    return sum(r.confidence for r in tool_results) / len(tool_results)


def _vector_content(item: Any) -> str:
    if isinstance(item, dict):
        return str((item.get("metadata") or {}).get("content") or "")
    return getattr(item, "content", "")


def build_context(tool_results: List[ToolResult], limits: Optional[Dict[str, int]] = None) -> List[str]:
    """Flatten tool outputs into bounded, labelled context snippets."""
    limits = {**DEFAULT_CONTEXT_LIMITS, **(limits or {})}
    parts = []

    for result in tool_results:
        if not isinstance(result.data, list):
            continue
        items = result.data[:limits.get(result.tool.value, 5)]

        if result.tool == ToolType.VECTOR_SEARCH:
            for item in items:
                content = _vector_content(item)
                if content:
                    parts.append(f"[Vector Search] {content}")

        elif result.tool == ToolType.ENTITY_SEARCH:
            for item in items:
                entity = item.get("entity") or {}
                if entity:
                    parts.append(
                        f"[Entity] {entity.get('name')} ({entity.get('type')}): "
                        f"{entity.get('description') or 'No description'}"
                    )

        elif result.tool == ToolType.GRAPH_TRAVERSAL:
            for item in items:
                source, target = item.get("source"), item.get("target")
                if source and target:
                    relationships = item.get("relationships") or []
                    rel_type = relationships[0].get("type") if relationships else "RELATED_TO"
                    parts.append(f"[Relationship] {source.get('name')} -> {rel_type} -> {target.get('name')}")

        elif result.tool == ToolType.RELATIONSHIP_PATH:
            for path in items:
                names = [n.get("name") or n.get("id") for n in path.get("nodes") or []]
                parts.append(f"[Path] {' -> '.join(str(n) for n in names)} ({path.get('length', 0)} hops)")

    return parts


class ReasoningEngine:
    """Drives the query planner and refines the synthesized answer."""

    def __init__(self, config: Dict[str, Any], query_planner: QueryPlanner, llm_manager, cache: Optional[Cache] = None):
        self.config = config
        self.query_planner = query_planner
        self.llm_manager = llm_manager
        self.cache = cache or NullCache()

        self.max_iterations = config.get("max_iterations", 3)
        self.confidence_threshold = config.get("confidence_threshold", 0.85)
        self.chain_cache_ttl = config.get("chain_cache_ttl", 3600)
        self.context_limits = config.get("context_limits", {})
        self.history_turns = config.get("history_turns", 6)
        self.synthesis_max_tokens = config.get("synthesis_max_tokens", 800)

    async def stream_reasoning(self, context: QueryContext) -> AsyncIterator[StreamChunk]:
        """
        Reason about a query, yielding progress chunks.

        The last chunk is always a ``final_answer`` chunk whose data is a
        FinalAnswer.

        Raises:
            ReasoningError: a completion call failed during planning,
                synthesis or refinement
        """
        start = time.perf_counter()
        steps: List[ReasoningStep] = []
        tools_used: List[str] = []

        def step(step_type: str, content: str, confidence: Optional[float] = None, metadata=None) -> StreamChunk:
            reasoning_step = ReasoningStep(
                id=f"step-{len(steps) + 1}",
                type=step_type,
                content=content,
                confidence=confidence,
                metadata=metadata or {},
            )
            steps.append(reasoning_step)
            return StreamChunk(type="reasoning_step", data=reasoning_step)

        yield step("thought", f'Analyzing query: "{context.query}"')

        plan = await self._plan(context)
        yield step(
            "thought",
            f"Created execution plan with {len(plan.steps)} steps. "
            f"Complexity: {plan.complexity}. Reasoning: {plan.reasoning}",
            metadata={"plan": plan.to_dict()},
        )

        yield step("action", "Executing query plan...")
        tool_results = await self.query_planner.execute_plan(plan, context)

        for result in tool_results:
            if result.tool.value not in tools_used:
                tools_used.append(result.tool.value)
            yield StreamChunk(type="tool_execution", data={
                "tool": result.tool.value,
                "confidence": result.confidence,
                "execution_time": result.execution_time,
                "result_count": result.result_count,
            })
            yield step(
                "observation",
                f'Tool "{result.tool.value}" completed. Found {result.result_count} results '
                f"with {result.confidence * 100:.0f}% confidence.",
                confidence=result.confidence,
            )

        yield step("thought", f"Synthesizing information from {len(tool_results)} tool results...")
        answer, confidence = await self._synthesize(context, tool_results)

        iteration = 0
        while iteration < self.max_iterations and confidence < self.confidence_threshold:
            iteration += 1
            yield step(
                "thought",
                f"Refining answer (iteration {iteration}). Current confidence: {confidence * 100:.0f}%",
                confidence=confidence,
            )

            decision = await self._evaluate(context.query, answer, tool_results)
            if not decision.needs_refinement:
                break

            yield step("thought", f"Identified improvement areas: {decision.reason}")

            if decision.additional_query:
                yield step("action", f"Gathering additional information: {decision.additional_query}")
                refined_context = context.with_query(decision.additional_query)
                refined_plan = await self._plan(refined_context)
                refined_results = await self.query_planner.execute_plan(refined_plan, refined_context)
                tool_results.extend(refined_results)
                for result in refined_results:
                    if result.tool.value not in tools_used:
                        tools_used.append(result.tool.value)
                yield StreamChunk(type="refinement", data={
                    "iteration": iteration,
                    "additional_results": len(refined_results),
                })

            answer, confidence = await self._synthesize(context, tool_results)

        yield step(
            "conclusion",
            f"Reached conclusion with {confidence * 100:.0f}% confidence "
            f"after {iteration} refinement iterations.",
            confidence=confidence,
        )

        chain = ReasoningChain(
            query=context.query,
            steps=steps,
            final_answer=answer,
            confidence=confidence,
            tools_used=tools_used,
            iteration_count=iteration,
            execution_time=(time.perf_counter() - start) * 1000,
        )
        await self.cache.set(self._chain_key(context.user_id, context.query), chain.to_dict(), self.chain_cache_ttl)
        logger.info(
            f"Reasoning finished: confidence {confidence:.2f}, {iteration} iterations, "
            f"{len(tool_results)} tool results"
        )

        yield StreamChunk(type="final_answer", data=FinalAnswer(
            answer=answer,
            confidence=confidence,
            reasoning=chain,
            tool_results=tool_results,
        ))

    async def reason(self, context: QueryContext) -> ReasoningChain:
        """Non-streaming variant returning the completed chain."""
        final = None
        async for chunk in self.stream_reasoning(context):
            if chunk.type == "final_answer":
                final = chunk.data
        if final is None:
            raise ReasoningError("Reasoning failed to produce a final answer")
        return final.reasoning

    async def get_cached_reasoning(self, user_id: str, query: str) -> Optional[ReasoningChain]:
        cached = await self.cache.get(self._chain_key(user_id, query))
        if not cached:
            return None
        logger.info(f"Reasoning cache hit for user {user_id}")
        return ReasoningChain.from_dict(cached)

    @staticmethod
    def _chain_key(user_id: str, query: str) -> str:
        return make_cache_key("reasoning", user_id, hashed=query)

    async def _plan(self, context: QueryContext):
        try:
            return await self.query_planner.plan_query(context)
        except Exception as e:
            logger.error(f"Query planning failed: {e}")
            raise ReasoningError(f"Query planning failed: {e}") from e

    def _history_messages(self, context: QueryContext) -> List[Dict[str, str]]:
        if self.history_turns <= 0:
            return []
        messages = []
        for turn in context.conversation_history[-self.history_turns:]:
            role = turn.get("role")
            content = turn.get("content")
            if role in ("user", "assistant") and content:
                messages.append({"role": role, "content": str(content)})
        return messages

    async def _synthesize(self, context: QueryContext, tool_results: List[ToolResult]):
        parts = build_context(tool_results, self.context_limits)
        if not parts:
            return NO_CONTEXT_ANSWER, 0.0

        messages = [{"role": "system", "content": SYNTHESIS_SYSTEM_PROMPT}]
        messages.extend(self._history_messages(context))
        context_text = "\n\n".join(parts)
        messages.append({
            "role": "user",
            "content": f"Context:\n{context_text}\n\nQuestion: {context.query}\n\nProvide a comprehensive answer:",
        })

        try:
            answer = await self.llm_manager.complete(messages, max_tokens=self.synthesis_max_tokens)
        except Exception as e:
            logger.error(f"Answer synthesis failed: {e}")
            raise ReasoningError(f"Answer synthesis failed: {e}") from e

        return answer or "Unable to generate answer.", overall_confidence(tool_results)

    async def _evaluate(self, query: str, answer: str, tool_results: List[ToolResult]) -> RefinementDecision:
        messages = [
            {"role": "system", "content": REFINEMENT_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Original Query: {query}\n\nCurrent Answer: {answer}\n\n"
                    f"Tool Results: {len(tool_results)} results with average confidence "
                    f"{overall_confidence(tool_results) * 100:.0f}%\n\nEvaluate:"
                ),
            },
        ]
        try:
            raw = await self.llm_manager.complete_json(messages, max_tokens=300)
        except Exception as e:
            logger.error(f"Refinement evaluation failed: {e}")
            raise ReasoningError(f"Refinement evaluation failed: {e}") from e

        if not raw:
            logger.warning("Refinement evaluation returned no usable JSON, keeping current answer")
        return RefinementDecision.from_llm(raw)
