"""
LLM Manager for handling completion and embedding providers.
"""

import json
import logging
import os
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional

logger = logging.getLogger(__name__)

Message = Dict[str, str]


def resolve_env_vars(value: str) -> str:
    """Resolve environment variables in string values like ${VAR_NAME}."""
    if isinstance(value, str) and "${" in value:
        def replace_env_var(match):
            var_name = match.group(1)
            return os.getenv(var_name, match.group(0))

        return re.sub(r'\$\{([^}]+)\}', replace_env_var, value)
    return value


def parse_json_object(text: Optional[str]) -> Dict[str, Any]:
    """
    Parse a JSON object out of an LLM reply.

    Replies wrapped in prose or Markdown fences are tolerated. Anything that is
    not a JSON object yields an empty dict.
    """
    if not text:
        return {}

    candidates = [text]
    json_match = re.search(r'\{.*\}', text, re.DOTALL)
    if json_match:
        candidates.insert(0, json_match.group())

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed

    logger.warning("LLM reply did not contain a JSON object")
    return {}


@dataclass
class LLMConfig:
    """Configuration for LLM providers."""
    provider: str
    model: str
    temperature: float = 0.1
    max_tokens: int = 2000
    api_key: Optional[str] = None
    embedding_model: str = "text-embedding-3-large"

    def __post_init__(self):
        """Resolve environment variables after initialization."""
        if self.api_key:
            self.api_key = resolve_env_vars(self.api_key)


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    @abstractmethod
    async def complete(self, messages: List[Message], **kwargs) -> str:
        """Return the completion for a chat message list."""

    @abstractmethod
    async def complete_json(self, messages: List[Message], **kwargs) -> Dict[str, Any]:
        """Return the completion parsed as a JSON object."""

    @abstractmethod
    def stream(self, messages: List[Message], **kwargs) -> AsyncIterator[str]:
        """Yield completion tokens as they arrive."""

    @abstractmethod
    async def embed(self, text: str) -> List[float]:
        """Generate an embedding vector for text."""

    async def close(self):
        """Release network resources held by the provider."""


class OpenAIProvider(LLMProvider):
    """OpenAI provider implementation."""

    def __init__(self, config: LLMConfig):
        self.config = config
        self.api_key = config.api_key or os.getenv("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError("OpenAI API key not found")

        from openai import AsyncOpenAI

        self.client = AsyncOpenAI(api_key=self.api_key)

    def _request_args(self, messages: List[Message], kwargs: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "model": kwargs.get("model", self.config.model),
            "messages": messages,
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
        }

    async def complete(self, messages: List[Message], **kwargs) -> str:
        """Generate text using OpenAI."""
        try:
            response = await self.client.chat.completions.create(**self._request_args(messages, kwargs))
            return response.choices[0].message.content or ""
        except Exception as e:
            logger.error(f"OpenAI generation error: {e}")
            raise

    async def complete_json(self, messages: List[Message], **kwargs) -> Dict[str, Any]:
        """Generate a JSON object using OpenAI's JSON mode."""
        try:
            response = await self.client.chat.completions.create(
                response_format={"type": "json_object"},
                **self._request_args(messages, kwargs)
            )
        except Exception as e:
            logger.error(f"OpenAI JSON generation error: {e}")
            raise
        return parse_json_object(response.choices[0].message.content)

    async def stream(self, messages: List[Message], **kwargs) -> AsyncIterator[str]:
        """Stream tokens from OpenAI."""
        response = await self.client.chat.completions.create(
            stream=True,
            **self._request_args(messages, kwargs)
        )
        async for chunk in response:
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content

    async def embed(self, text: str) -> List[float]:
        """Generate embeddings using OpenAI."""
        try:
            response = await self.client.embeddings.create(
                model=self.config.embedding_model,
                input=text
            )
            return response.data[0].embedding
        except Exception as e:
            logger.error(f"OpenAI embedding error: {e}")
            raise

    async def close(self):
        await self.client.close()


class AnthropicProvider(LLMProvider):
    """Anthropic provider implementation.

    Anthropic has no embedding endpoint, so embeddings go through an OpenAI
    client when an OpenAI key is configured.
    """

    def __init__(self, config: LLMConfig, embedding_api_key: Optional[str] = None):
        self.config = config
        self.api_key = config.api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError("Anthropic API key not found")

        import anthropic

        self.client = anthropic.AsyncAnthropic(api_key=self.api_key)

        self.embedding_client = None
        embedding_key = embedding_api_key or os.getenv("OPENAI_API_KEY")
        if embedding_key:
            from openai import AsyncOpenAI
            self.embedding_client = AsyncOpenAI(api_key=embedding_key)

    def _request_args(self, messages: List[Message], kwargs: Dict[str, Any]) -> Dict[str, Any]:
        system_parts = [m["content"] for m in messages if m.get("role") == "system"]
        chat_messages = [m for m in messages if m.get("role") != "system"]
        args = {
            "model": kwargs.get("model", self.config.model),
            "max_tokens": kwargs.get("max_tokens", self.config.max_tokens),
            "temperature": kwargs.get("temperature", self.config.temperature),
            "messages": chat_messages,
        }
        if system_parts:
            args["system"] = "\n\n".join(system_parts)
        return args

    async def complete(self, messages: List[Message], **kwargs) -> str:
        """Generate text using Anthropic."""
        try:
            response = await self.client.messages.create(**self._request_args(messages, kwargs))
            return "".join(block.text for block in response.content if block.type == "text")
        except Exception as e:
            logger.error(f"Anthropic generation error: {e}")
            raise

    async def complete_json(self, messages: List[Message], **kwargs) -> Dict[str, Any]:
        """Generate a JSON object using Anthropic."""
        instructed = list(messages) + [{
            "role": "user",
            "content": "Respond ONLY with a single JSON object. Do not include any other text."
        }]
        return parse_json_object(await self.complete(instructed, **kwargs))

    async def stream(self, messages: List[Message], **kwargs) -> AsyncIterator[str]:
        """Stream tokens from Anthropic."""
        async with self.client.messages.stream(**self._request_args(messages, kwargs)) as stream:
            async for text in stream.text_stream:
                if text:
                    yield text

    async def embed(self, text: str) -> List[float]:
        """Generate embeddings through the OpenAI embedding client."""
        if self.embedding_client is None:
            raise NotImplementedError("Anthropic provider needs OPENAI_API_KEY for embeddings")
        try:
            response = await self.embedding_client.embeddings.create(
                model=self.config.embedding_model,
                input=text
            )
            return response.data[0].embedding
        except Exception as e:
            logger.error(f"Embedding error: {e}")
            raise

    async def close(self):
        await self.client.close()
        if self.embedding_client is not None:
            await self.embedding_client.close()


PROVIDER_CLASSES = {
    "openai": (OpenAIProvider, "gpt-4o-mini"),
    "anthropic": (AnthropicProvider, "claude-3-5-sonnet-latest"),
}


class LLMManager:
    """Manager for handling different LLM providers."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.providers: Dict[str, LLMProvider] = {}
        self._initialize_providers()

        default = self.config.get("llm", {}).get("default_provider")
        if default not in self.providers:
            fallback = next(iter(self.providers))
            if default:
                logger.warning(f"Default provider {default} unavailable, using {fallback}")
            default = fallback
        self.default_provider = default

    def _initialize_providers(self):
        llm_config = self.config.get("llm", {})

        for name, (provider_cls, default_model) in PROVIDER_CLASSES.items():
            section = llm_config.get(name)
            if section is None:
                continue
            provider_config = LLMConfig(
                provider=name,
                model=section.get("model") or default_model,
                temperature=section.get("temperature", 0.1),
                max_tokens=section.get("max_tokens", 2000),
                api_key=section.get("api_key"),
                embedding_model=section.get("embedding_model") or "text-embedding-3-large",
            )
            try:
                self.providers[name] = provider_cls(provider_config)
                logger.info(f"{name} provider ready with model {provider_config.model}")
            except Exception as e:
                logger.warning(f"Skipping {name} provider: {e}")

        if not self.providers:
            raise ValueError("No completion provider is configured")

    def _provider(self, provider: Optional[str] = None) -> LLMProvider:
        provider_name = provider or self.default_provider

        if provider_name not in self.providers:
            raise ValueError(f"Provider {provider_name} not available")

        return self.providers[provider_name]

    async def complete(self, messages: List[Message], provider: Optional[str] = None, **kwargs) -> str:
        """Generate text using specified or default provider."""
        return await self._provider(provider).complete(messages, **kwargs)

    async def complete_json(self, messages: List[Message], provider: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        """Generate a JSON object using specified or default provider."""
        return await self._provider(provider).complete_json(messages, **kwargs)

    def stream(self, messages: List[Message], provider: Optional[str] = None, **kwargs) -> AsyncIterator[str]:
        """Stream completion tokens from specified or default provider."""
        return self._provider(provider).stream(messages, **kwargs)

    async def embed(self, text: str, provider: Optional[str] = None) -> List[float]:
        """Embed text for similarity comparison."""
        return await self._provider(provider).embed(text)

    def get_available_providers(self) -> List[str]:
        return list(self.providers.keys())

    async def close(self):
        for provider in self.providers.values():
            await provider.close()
