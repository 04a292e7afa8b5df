"""
Vector retrieval over document chunks stored in Pinecone.
"""

from .models import VectorMatch
from .vector_store import PineconeVectorStore, cosine_similarity

__all__ = ["VectorMatch", "PineconeVectorStore", "cosine_similarity"]
