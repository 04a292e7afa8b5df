"""
Streaming chat surface over the reasoning engine.
"""

from .chat_service import ChatService, collect_entity_ids, extract_sources
from .models import ChatEvent, Source

__all__ = ["ChatService", "ChatEvent", "Source", "collect_entity_ids", "extract_sources"]
