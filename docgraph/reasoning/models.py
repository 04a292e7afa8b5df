"""
Data models for the reasoning engine.
"""

import time
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional

from ..router.models import ToolResult

STEP_TYPES = ("thought", "action", "observation", "conclusion")
CHUNK_TYPES = ("reasoning_step", "tool_execution", "refinement", "final_answer")


class ReasoningError(RuntimeError):
    """A completion call failed and no answer could be produced."""


@dataclass
class ReasoningStep:
    """One entry of the visible reasoning trace."""
    id: str
    type: str
    content: str
    timestamp: float = field(default_factory=time.time)
    confidence: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in STEP_TYPES:
            raise ValueError(f"Unknown reasoning step type: {self.type}")

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "timestamp": self.timestamp,
        }
        if self.confidence is not None:
            data["confidence"] = self.confidence
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReasoningStep":
        return cls(
            id=data["id"],
            type=data["type"],
            content=data.get("content", ""),
            timestamp=data.get("timestamp", 0.0),
            confidence=data.get("confidence"),
            metadata=data.get("metadata") or {},
        )


@dataclass
class ReasoningChain:
    """Full record of one answer's derivation."""
    query: str
    steps: List[ReasoningStep]
    final_answer: str
    confidence: float
    tools_used: List[str] = field(default_factory=list)
    iteration_count: int = 0
    execution_time: float = 0.0

    @property
    def total_steps(self) -> int:
        return len(self.steps)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "query": self.query,
            "steps": [s.to_dict() for s in self.steps],
            "final_answer": self.final_answer,
            "confidence": self.confidence,
            "metadata": {
                "total_steps": self.total_steps,
                "execution_time": self.execution_time,
                "tools_used": list(self.tools_used),
                "iteration_count": self.iteration_count,
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReasoningChain":
        metadata = data.get("metadata") or {}
        return cls(
            query=data.get("query", ""),
            steps=[ReasoningStep.from_dict(s) for s in data.get("steps") or []],
            final_answer=data.get("final_answer", ""),
            confidence=float(data.get("confidence") or 0.0),
            tools_used=list(metadata.get("tools_used") or []),
            iteration_count=int(metadata.get("iteration_count") or 0),
            execution_time=float(metadata.get("execution_time") or 0.0),
        )


@dataclass
class RefinementDecision:
    needs_refinement: bool = False
    reason: str = ""
    additional_query: str = ""

    @classmethod
    def from_llm(cls, data: Any) -> "RefinementDecision":
        if not isinstance(data, dict):
            return cls()
        needs = data.get("needsRefinement")
        if isinstance(needs, str):
            needs = needs.strip().lower() == "true"
        reason = data.get("reason")
        query = data.get("additionalQuery")
        return cls(
            needs_refinement=needs is True,
            reason=reason if isinstance(reason, str) else "",
            additional_query=query.strip() if isinstance(query, str) else "",
        )


@dataclass
class FinalAnswer:
    answer: str
    confidence: float
    reasoning: ReasoningChain
    tool_results: List[ToolResult]


@dataclass
class StreamChunk:
    """A progress event emitted by the reasoning stream."""
    type: str
    data: Any
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self):
        if self.type not in CHUNK_TYPES:
            raise ValueError(f"Unknown stream chunk type: {self.type}")
