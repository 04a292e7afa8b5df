"""
LLM abstraction layer for completion and embedding services.
"""

from .llm_manager import LLMManager, LLMConfig, AnthropicProvider, OpenAIProvider, parse_json_object

__all__ = ["LLMManager", "LLMConfig", "parse_json_object", "OpenAIProvider", "AnthropicProvider"]
