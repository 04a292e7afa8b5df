"""
Data models for the chat streaming surface.
"""

import json
from dataclasses import dataclass, field
from typing import Dict, Any, Optional

EVENT_TYPES = (
    "thinking", "reasoning", "tool", "refinement", "chunk",
    "sources", "knowledge_graph", "metadata", "error",
)


@dataclass
class ChatEvent:
    """A typed event streamed to the chat client."""
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.type not in EVENT_TYPES:
            raise ValueError(f"Unknown chat event type: {self.type}")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, **self.payload}

    def to_sse(self) -> str:
        """Server-sent-events frame."""
        return f"data: {json.dumps(self.to_dict(), default=str)}\n\n"


@dataclass
class Source:
    """A citable source backing the answer."""
    type: str
    file_name: str
    content: Optional[str] = None
    score: Optional[float] = None
    entity: Optional[str] = None
    entity_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"type": self.type, "fileName": self.file_name}
        if self.content is not None:
            data["content"] = self.content
        if self.score is not None:
            data["score"] = self.score
        if self.entity is not None:
            data["entity"] = self.entity
            data["entityType"] = self.entity_type
        return data
