"""
Multi-step reasoning with iterative refinement and streamed progress.
"""

from .models import (
    FinalAnswer,
    ReasoningChain,
    ReasoningError,
    ReasoningStep,
    RefinementDecision,
    StreamChunk,
)
from .reasoning_engine import ReasoningEngine

__all__ = [
    "FinalAnswer",
    "ReasoningChain",
    "ReasoningError",
    "ReasoningStep",
    "RefinementDecision",
    "StreamChunk",
    "ReasoningEngine",
]
