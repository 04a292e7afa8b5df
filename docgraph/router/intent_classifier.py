"""
Intent Classifier for analyzing query type, required capabilities and complexity.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from ..cache import Cache, NullCache, make_cache_key

logger = logging.getLogger(__name__)

QUERY_TYPES = ("factual", "relational", "exploratory", "analytical", "comparative")
CAPABILITIES = ("semantic_search", "graph_traversal", "entity_lookup", "relationship_finding")
COMPLEXITY_LEVELS = ("simple", "moderate", "complex")

INTENT_SYSTEM_PROMPT = """You are a query analysis expert. Analyze the user's query and determine:
1. Query type: factual, relational, exploratory, analytical, comparative
2. Required capabilities: semantic_search, graph_traversal, entity_lookup, relationship_finding
3. Complexity level: simple, moderate, complex
4. Key entities or concepts to search for
5. Whether it needs multi-hop reasoning

Return JSON with this structure:
{
  "queryType": "factual|relational|exploratory|analytical|comparative",
  "capabilities": ["semantic_search", "graph_traversal", "entity_lookup", "relationship_finding"],
  "complexity": "simple|moderate|complex",
  "keyEntities": ["entity1", "entity2"],
  "needsMultiHop": true|false,
  "reasoning": "explanation of the analysis",
  "suggestedApproach": "description of best approach"
}"""


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return False


def _normalise_token(value: Any) -> str:
    return str(value).strip().lower().replace(" ", "_").replace("-", "_")


@dataclass
class QueryAnalysis:
    """Normalised result of LLM intent analysis."""
    query_type: str = "factual"
    capabilities: List[str] = field(default_factory=list)
    complexity: str = "moderate"
    key_entities: List[str] = field(default_factory=list)
    needs_multi_hop: bool = False
    reasoning: str = ""
    suggested_approach: str = ""

    @classmethod
    def from_llm(cls, data: Any, max_key_entities: int = 5) -> "QueryAnalysis":
        """
        Build an analysis from loosely typed LLM JSON.

        Unknown or wrong-typed fields fall back to their defaults.
        """
        if not isinstance(data, dict):
            return cls()

        query_type = _normalise_token(data.get("queryType", ""))
        if query_type not in QUERY_TYPES:
            query_type = "factual"

        raw_capabilities = data.get("capabilities")
        capabilities = []
        if isinstance(raw_capabilities, list):
            for capability in raw_capabilities:
                token = _normalise_token(capability)
                if token in CAPABILITIES and token not in capabilities:
                    capabilities.append(token)

        complexity = _normalise_token(data.get("complexity", ""))
        if complexity not in COMPLEXITY_LEVELS:
            complexity = "moderate"

        raw_entities = data.get("keyEntities")
        key_entities = []
        if isinstance(raw_entities, list):
            for entity in raw_entities:
                if isinstance(entity, (str, int, float)) and str(entity).strip():
                    key_entities.append(str(entity).strip())

        reasoning = data.get("reasoning")
        approach = data.get("suggestedApproach")

        return cls(
            query_type=query_type,
            capabilities=capabilities,
            complexity=complexity,
            key_entities=key_entities[:max_key_entities],
            needs_multi_hop=_as_bool(data.get("needsMultiHop")),
            reasoning=reasoning if isinstance(reasoning, str) else "",
            suggested_approach=approach if isinstance(approach, str) else "",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queryType": self.query_type,
            "capabilities": list(self.capabilities),
            "complexity": self.complexity,
            "keyEntities": list(self.key_entities),
            "needsMultiHop": self.needs_multi_hop,
            "reasoning": self.reasoning,
            "suggestedApproach": self.suggested_approach,
        }


class IntentClassifier:
    """LLM-backed query intent classifier with a result cache."""

    def __init__(self, config: Dict[str, Any], llm_manager, cache: Optional[Cache] = None):
        self.config = config
        self.llm_manager = llm_manager
        self.cache = cache or NullCache()
        self.cache_ttl = config.get("intent_cache_ttl", 3600)
        self.max_key_entities = config.get("max_key_entities", 5)

    async def analyze_intent(self, query: str) -> QueryAnalysis:
        """
        Analyze query intent and complexity.

        Args:
            query: The user's natural language query

        Returns:
            QueryAnalysis with normalised classification fields
        """
        cache_key = make_cache_key("query-intent", hashed=query)
        cached = await self.cache.get(cache_key)
        if cached:
            logger.info("Using cached intent analysis")
            return QueryAnalysis.from_llm(cached, self.max_key_entities)

        messages = [
            {"role": "system", "content": INTENT_SYSTEM_PROMPT},
            {"role": "user", "content": query},
        ]
        raw = await self.llm_manager.complete_json(messages)
        if not raw:
            logger.warning("Intent analysis returned no usable JSON, using default classification")

        analysis = QueryAnalysis.from_llm(raw, self.max_key_entities)
        logger.info(
            f"Intent: type={analysis.query_type}, capabilities={analysis.capabilities}, "
            f"complexity={analysis.complexity}, entities={analysis.key_entities}"
        )

        await self.cache.set(cache_key, analysis.to_dict(), self.cache_ttl)
        return analysis
