"""
Pinecone-backed vector store for document chunk retrieval.
"""

import asyncio
import logging
import os
from typing import List, Dict, Any, Optional, Sequence

import numpy as np

from .models import VectorMatch
from ..models.llm_manager import resolve_env_vars

logger = logging.getLogger(__name__)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors; 0.0 when either is empty or zero."""
    if a is None or b is None or len(a) == 0 or len(b) == 0 or len(a) != len(b):
        return 0.0
    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)
    norm = np.linalg.norm(vec_a) * np.linalg.norm(vec_b)
    if norm == 0:
        return 0.0
    return float(np.dot(vec_a, vec_b) / norm)


class PineconeVectorStore:
    """Query interface over a user-partitioned Pinecone index."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.index_name = config.get("index_name", "docgraph")
        self.namespace = config.get("namespace")
        api_key = resolve_env_vars(config.get("api_key") or "") or os.getenv("PINECONE_API_KEY")

        if not api_key:
            raise ValueError("Pinecone API key must be provided")

        from pinecone import Pinecone

        self.pc = Pinecone(api_key=api_key)
        self.index = self.pc.Index(self.index_name)
        logger.info(f"Using Pinecone index: {self.index_name}")

    @staticmethod
    def build_filter(user_id: str, document_ids: Optional[List[str]] = None) -> Dict[str, Any]:
        """Metadata filter restricting matches to a user and optional documents."""
        metadata_filter: Dict[str, Any] = {"userId": user_id}
        if document_ids:
            metadata_filter["documentId"] = {"$in": list(document_ids)}
        return metadata_filter

    async def query(
        self,
        vector: List[float],
        user_id: str,
        top_k: int = 10,
        document_ids: Optional[List[str]] = None
    ) -> List[VectorMatch]:
        """
        Return the top_k chunks most similar to vector.

        Args:
            vector: Query embedding
            user_id: Owner of the chunks to search
            top_k: Maximum number of matches
            document_ids: Optional allowlist of document ids

        Returns:
            Matches ordered by descending score
        """
        kwargs = {
            "vector": vector,
            "top_k": top_k,
            "include_metadata": True,
            "filter": self.build_filter(user_id, document_ids),
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace

        response = await asyncio.to_thread(self.index.query, **kwargs)

        matches = []
        for match in response.matches or []:
            matches.append(VectorMatch(
                id=str(match.id),
                score=float(match.score or 0.0),
                metadata=dict(match.metadata or {})
            ))

        logger.debug(f"Pinecone returned {len(matches)} matches for user {user_id}")
        return matches

    async def close(self):
        """Pinecone's HTTP client holds no connection that needs closing."""
