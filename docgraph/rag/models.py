"""
Data models for the vector retrieval module.
"""

from dataclasses import dataclass, field
from typing import Dict, Any


@dataclass
class VectorMatch:
    """A ranked chunk returned by the vector index."""
    id: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def content(self) -> str:
        return str(self.metadata.get("content") or self.metadata.get("text") or "")

    @property
    def file_name(self) -> str:
        return str(self.metadata.get("fileName") or self.metadata.get("source") or "")

    @property
    def document_id(self) -> str:
        return str(self.metadata.get("documentId") or "")

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "score": self.score, "metadata": dict(self.metadata)}
