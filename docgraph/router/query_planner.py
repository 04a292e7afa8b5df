"""
Query Planner for dynamic tool selection and dependency-ordered execution.
"""

import asyncio
import logging
import time
from typing import Dict, Any, List, Optional

from .intent_classifier import IntentClassifier, QueryAnalysis
from .models import (
    QueryContext,
    QueryPlan,
    QueryStep,
    ToolResult,
    ToolType,
    TOOL_TIME_ESTIMATES,
)
from ..cache import Cache
from ..rag.vector_store import cosine_similarity

logger = logging.getLogger(__name__)

CYPHER_SYSTEM_PROMPT = """You are a Cypher query expert. Convert natural language queries to Cypher.

Schema:
- Nodes: User, Document, Entity
- Relationships: OWNS (User->Document), CONTAINS (Document->Entity), various entity relationships

Entity properties: id, name, type, description, aliases
Document properties: id, fileName, status, createdAt

The current user's id is available as the parameter $userId. Always restrict
results to entities reachable from (:User {id: $userId}).

Return only the Cypher query, no explanation."""


def determine_complexity(steps: List[QueryStep]) -> str:
    if len(steps) <= 2:
        return "simple"
    if len(steps) <= 4:
        return "moderate"
    return "complex"


def estimate_execution_time(steps: List[QueryStep]) -> int:
    return sum(TOOL_TIME_ESTIMATES.get(step.tool, 500) for step in steps)


def _score_of(item: Any) -> float:
    if isinstance(item, dict):
        return float(item.get("score") or 0.0)
    return float(getattr(item, "score", 0.0) or 0.0)


def calculate_confidence(data: Any, tool: ToolType) -> float:
    """Deterministic confidence for a tool result, clamped to [0, 1]."""
    if data is None:
        return 0.0

    if tool == ToolType.VECTOR_SEARCH:
        if isinstance(data, list) and data:
            confidence = sum(_score_of(item) for item in data) / len(data)
        else:
            confidence = 0.0
    elif tool in (ToolType.ENTITY_SEARCH, ToolType.GRAPH_TRAVERSAL, ToolType.RELATIONSHIP_PATH):
        confidence = 0.8 if isinstance(data, list) and data else 0.0
    elif tool == ToolType.HYBRID_SEARCH:
        confidence = 0.5 if isinstance(data, dict) and (data.get("vector") or data.get("graph")) else 0.0
    else:
        confidence = 0.5 if data else 0.0

    return max(0.0, min(1.0, confidence))


class QueryPlanner:
    """Plans and executes retrieval tool chains for a query."""

    def __init__(
        self,
        config: Dict[str, Any],
        llm_manager,
        vector_store,
        graph_store,
        intent_classifier: Optional[IntentClassifier] = None,
        cache: Optional[Cache] = None,
        parallel_execution: bool = False
    ):
        self.config = config
        self.llm_manager = llm_manager
        self.vector_store = vector_store
        self.graph_store = graph_store
        self.intent_classifier = intent_classifier or IntentClassifier(config, llm_manager, cache)

        self.vector_top_k = config.get("vector_top_k", 10)
        self.traversal_seed_limit = config.get("traversal_seed_limit", 5)
        self.relationship_max_depth = config.get("relationship_max_depth", 4)
        self.parallel_execution = parallel_execution or config.get("parallel_execution", False)

    async def plan_query(self, context: QueryContext) -> QueryPlan:
        """
        Analyze a query and create an execution plan.

        Args:
            context: The query in flight

        Returns:
            QueryPlan with steps sorted by priority
        """
        logger.info(f"Planning query: {context.query}")
        analysis = await self.intent_classifier.analyze_intent(context.query)
        steps = self.select_tools(analysis, context)

        plan = QueryPlan(
            steps=steps,
            reasoning=analysis.reasoning or f"{analysis.query_type} query",
            complexity=determine_complexity(steps),
            estimated_time=estimate_execution_time(steps),
        )
        logger.info(
            f"Plan created: {[s.tool.value for s in steps]} "
            f"({plan.complexity}, ~{plan.estimated_time}ms)"
        )
        return plan

    def select_tools(self, analysis: QueryAnalysis, context: QueryContext) -> List[QueryStep]:
        """Rule-based tool selection over the intent analysis."""
        steps: List[QueryStep] = []
        capabilities = set(analysis.capabilities)
        constraints = context.constraints

        def next_id() -> str:
            return f"step-{len(steps) + 1}"

        if "semantic_search" in capabilities or analysis.query_type == "factual" or constraints.requires_vector:
            top_k = self.vector_top_k
            if constraints.max_results:
                top_k = min(top_k, constraints.max_results)
            steps.append(QueryStep(
                id=next_id(),
                tool=ToolType.VECTOR_SEARCH,
                description="Perform semantic vector search for relevant content",
                parameters={"query": context.query, "top_k": top_k},
                priority=1,
            ))

        entity_step_id = None
        if "entity_lookup" in capabilities or analysis.key_entities or constraints.requires_graph:
            entity_step_id = next_id()
            steps.append(QueryStep(
                id=entity_step_id,
                tool=ToolType.ENTITY_SEARCH,
                description="Search for relevant entities in knowledge graph",
                parameters={"query": context.query, "entities": list(analysis.key_entities)},
                priority=2,
            ))

        if "graph_traversal" in capabilities or analysis.query_type == "relational":
            steps.append(QueryStep(
                id=next_id(),
                tool=ToolType.GRAPH_TRAVERSAL,
                description="Traverse knowledge graph to find relationships",
                parameters={"depth": 3 if analysis.needs_multi_hop else 2},
                dependencies=[entity_step_id] if entity_step_id else [],
                priority=3,
            ))

        if "relationship_finding" in capabilities and len(analysis.key_entities) >= 2:
            steps.append(QueryStep(
                id=next_id(),
                tool=ToolType.RELATIONSHIP_PATH,
                description="Find paths between entities",
                parameters={
                    "entity1": analysis.key_entities[0],
                    "entity2": analysis.key_entities[1],
                    "max_depth": self.relationship_max_depth,
                },
                priority=2,
            ))

        if analysis.complexity == "complex" or analysis.query_type == "analytical":
            steps.append(QueryStep(
                id=next_id(),
                tool=ToolType.CYPHER_QUERY,
                description="Generate and execute custom Cypher query",
                parameters={"query": context.query, "intent": analysis.reasoning},
                dependencies=[s.id for s in steps],
                priority=4,
            ))

        # sorted() is stable, so equal priorities keep insertion order
        return sorted(steps, key=lambda s: s.priority)

    async def execute_plan(self, plan: QueryPlan, context: QueryContext) -> List[ToolResult]:
        """
        Execute a plan, honouring step dependencies.

        A step runs only when every dependency produced a result. Failing
        steps are logged and dropped.

        Returns:
            Results of the steps that completed, in plan order
        """
        if self.parallel_execution:
            completed = await self._execute_waves(plan, context)
        else:
            completed = await self._execute_sequential(plan, context)

        results = [completed[step.id] for step in plan.steps if step.id in completed]
        logger.info(f"Executed {len(results)}/{len(plan.steps)} steps")
        return results

    async def _execute_sequential(self, plan: QueryPlan, context: QueryContext) -> Dict[str, ToolResult]:
        completed: Dict[str, ToolResult] = {}
        for step in plan.steps:
            if not all(dep in completed for dep in step.dependencies):
                logger.info(f"Skipping {step.id} ({step.tool.value}): dependencies not met")
                continue
            result = await self._run_step(step, context, completed)
            if result is not None:
                completed[step.id] = result
        return completed

    async def _execute_waves(self, plan: QueryPlan, context: QueryContext) -> Dict[str, ToolResult]:
        completed: Dict[str, ToolResult] = {}
        attempted = set()
        pending = list(plan.steps)

        while pending:
            wave = [s for s in pending if all(dep in attempted for dep in s.dependencies)]
            if not wave:
                for step in pending:
                    logger.info(f"Skipping {step.id} ({step.tool.value}): unknown dependency")
                break

            wave_ids = {s.id for s in wave}
            pending = [s for s in pending if s.id not in wave_ids]

            runnable = []
            for step in wave:
                if all(dep in completed for dep in step.dependencies):
                    runnable.append(step)
                else:
                    logger.info(f"Skipping {step.id} ({step.tool.value}): dependencies not met")

            # Snapshot so steps in one wave never see each other's results
            snapshot = dict(completed)
            outcomes = await asyncio.gather(*(self._run_step(s, context, snapshot) for s in runnable))
            for step, outcome in zip(runnable, outcomes):
                if outcome is not None:
                    completed[step.id] = outcome
            attempted.update(wave_ids)

        return completed

    async def _run_step(
        self,
        step: QueryStep,
        context: QueryContext,
        completed: Dict[str, ToolResult]
    ) -> Optional[ToolResult]:
        start = time.perf_counter()
        try:
            data = await asyncio.wait_for(
                self._execute_tool(step, context, completed),
                timeout=context.constraints.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Step {step.id} ({step.tool.value}) timed out after {context.constraints.timeout}s")
            return None
        except Exception as e:
            logger.warning(f"Step {step.id} ({step.tool.value}) failed: {e}")
            return None

        execution_time = (time.perf_counter() - start) * 1000
        result = ToolResult(
            step_id=step.id,
            tool=step.tool,
            data=data,
            confidence=calculate_confidence(data, step.tool),
            execution_time=execution_time,
        )
        logger.info(
            f"Step {step.id} ({step.tool.value}) completed in {execution_time:.0f}ms "
            f"with {result.result_count} results, confidence {result.confidence:.2f}"
        )
        return result

    async def _execute_tool(
        self,
        step: QueryStep,
        context: QueryContext,
        completed: Dict[str, ToolResult]
    ) -> Any:
        params = step.parameters

        if step.tool == ToolType.VECTOR_SEARCH:
            return await self._vector_search(params, context)
        if step.tool == ToolType.ENTITY_SEARCH:
            return await self._entity_search(params, context)
        if step.tool == ToolType.GRAPH_TRAVERSAL:
            return await self._graph_traversal(params, completed)
        if step.tool == ToolType.RELATIONSHIP_PATH:
            return await self.graph_store.find_paths(
                context.user_id,
                params["entity1"],
                params["entity2"],
                params.get("max_depth", self.relationship_max_depth),
            )
        if step.tool == ToolType.CYPHER_QUERY:
            cypher = await self._generate_cypher(params.get("query", context.query), params.get("intent", ""))
            return await self.graph_store.execute_cypher(cypher, {"userId": context.user_id})
        if step.tool == ToolType.SEMANTIC_SIMILARITY:
            first, second = await asyncio.gather(
                self.llm_manager.embed(params["text1"]),
                self.llm_manager.embed(params["text2"]),
            )
            return {"similarity": cosine_similarity(first, second)}
        if step.tool == ToolType.HYBRID_SEARCH:
            vector, graph = await asyncio.gather(
                self._vector_search(params, context),
                self._entity_search(params, context),
            )
            return {"vector": vector, "graph": graph}

        raise ValueError(f"Unknown tool: {step.tool}")

    async def _vector_search(self, params: Dict[str, Any], context: QueryContext):
        embedding = await self.llm_manager.embed(params.get("query", context.query))
        return await self.vector_store.query(
            embedding,
            context.user_id,
            params.get("top_k", self.vector_top_k),
            context.document_ids,
        )

    async def _entity_search(self, params: Dict[str, Any], context: QueryContext):
        return await self.graph_store.search_entities(
            context.user_id,
            params.get("query", context.query),
            context.document_ids,
        )

    async def _graph_traversal(self, params: Dict[str, Any], completed: Dict[str, ToolResult]):
        entity_ids = list(params.get("entity_ids") or [])

        if not entity_ids:
            for result in completed.values():
                if result.tool == ToolType.ENTITY_SEARCH and result.data:
                    entity_ids = [
                        row["entity"]["id"] for row in result.data[:self.traversal_seed_limit]
                        if row.get("entity", {}).get("id")
                    ]
                    break

        if not entity_ids:
            return []

        relationships = []
        for entity_id in entity_ids:
            relationships.extend(
                await self.graph_store.get_entity_relationships(entity_id, params.get("depth", 2))
            )
        return relationships

    async def _generate_cypher(self, query: str, intent: str) -> str:
        messages = [
            {"role": "system", "content": CYPHER_SYSTEM_PROMPT},
            {"role": "user", "content": f"Query: {query}\nIntent: {intent}\n\nGenerate Cypher query:"},
        ]
        cypher = await self.llm_manager.complete(messages)
        logger.debug(f"Generated Cypher: {cypher}")
        return (cypher or "").strip()
