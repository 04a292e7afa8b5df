"""
Data models for query planning and tool execution.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, List, Optional


class ToolType(str, Enum):
    """Retrieval tools the planner can schedule."""
    VECTOR_SEARCH = "vector_search"
    ENTITY_SEARCH = "entity_search"
    GRAPH_TRAVERSAL = "graph_traversal"
    RELATIONSHIP_PATH = "relationship_path"
    CYPHER_QUERY = "cypher_query"
    SEMANTIC_SIMILARITY = "semantic_similarity"
    HYBRID_SEARCH = "hybrid_search"


# Rough per-tool latency estimates in milliseconds.
TOOL_TIME_ESTIMATES = {
    ToolType.VECTOR_SEARCH: 500,
    ToolType.ENTITY_SEARCH: 300,
    ToolType.GRAPH_TRAVERSAL: 800,
    ToolType.RELATIONSHIP_PATH: 1000,
    ToolType.CYPHER_QUERY: 1200,
    ToolType.SEMANTIC_SIMILARITY: 400,
    ToolType.HYBRID_SEARCH: 1000,
}


@dataclass
class QueryConstraints:
    """Caller limits: vector top_k cap, per-step timeout in seconds, forced graph/vector tools."""
    max_results: Optional[int] = None
    timeout: Optional[float] = None
    requires_graph: bool = False
    requires_vector: bool = False


@dataclass
class QueryContext:
    """One user question in flight."""
    user_id: str
    query: str
    document_ids: Optional[List[str]] = None
    conversation_history: List[Dict[str, str]] = field(default_factory=list)
    constraints: QueryConstraints = field(default_factory=QueryConstraints)

    def __post_init__(self):
        if not self.user_id:
            raise ValueError("user_id is required")
        if not self.query or not self.query.strip():
            raise ValueError("query is required")

    def with_query(self, query: str) -> "QueryContext":
        """Copy of this context asking a different question."""
        return QueryContext(
            user_id=self.user_id,
            query=query,
            document_ids=self.document_ids,
            conversation_history=self.conversation_history,
            constraints=self.constraints,
        )


@dataclass
class QueryStep:
    """One planned tool invocation."""
    id: str
    tool: ToolType
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    dependencies: List[str] = field(default_factory=list)
    priority: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tool": self.tool.value,
            "description": self.description,
            "parameters": {k: v for k, v in self.parameters.items() if k != "user_id"},
            "dependencies": list(self.dependencies),
            "priority": self.priority,
        }


@dataclass
class QueryPlan:
    """Ordered steps for one query."""
    steps: List[QueryStep]
    reasoning: str
    complexity: str
    estimated_time: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps],
            "reasoning": self.reasoning,
            "complexity": self.complexity,
            "estimated_time": self.estimated_time,
        }


@dataclass
class ToolResult:
    """Output of one executed step."""
    step_id: str
    tool: ToolType
    data: Any
    confidence: float
    execution_time: float

    @property
    def result_count(self) -> int:
        if isinstance(self.data, (list, tuple)):
            return len(self.data)
        return 1 if self.data is not None else 0
