"""
Tests for LLM Manager functionality.
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest

from docgraph.models.llm_manager import LLMManager, parse_json_object, resolve_env_vars


def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class TestJsonParsing:
    """Test tolerant JSON extraction."""

    @pytest.mark.parametrize("text,expected", [
        ('{"a": 1}', {"a": 1}),
        ('Sure! ```json\n{"a": {"b": 2}}\n``` hope that helps', {"a": {"b": 2}}),
        ("[1, 2]", {}),
        ("no json here", {}),
        ("", {}),
        (None, {}),
    ])
    def test_parse(self, text, expected):
        assert parse_json_object(text) == expected

    def test_resolve_env_vars(self, monkeypatch):
        monkeypatch.setenv("DOCGRAPH_TEST_KEY", "secret")

        assert resolve_env_vars("${DOCGRAPH_TEST_KEY}") == "secret"
        assert resolve_env_vars("${DOCGRAPH_UNSET_KEY}") == "${DOCGRAPH_UNSET_KEY}"
        assert resolve_env_vars(5) == 5


class TestOpenAIManager:
    """Test the OpenAI-backed manager."""

    @pytest.fixture
    def client(self):
        client = Mock()
        client.chat.completions.create = AsyncMock(return_value=completion("Test response"))
        client.embeddings.create = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[0.5, 0.5])])
        )
        client.close = AsyncMock()
        return client

    @pytest.fixture
    def llm_manager(self, client):
        config = {"llm": {"default_provider": "openai", "openai": {"api_key": "test_key", "model": "gpt-4o-mini"}}}
        with patch("openai.AsyncOpenAI", return_value=client):
            return LLMManager(config)

    def test_initialization(self, llm_manager):
        assert llm_manager.get_available_providers() == ["openai"]

    @pytest.mark.asyncio
    async def test_complete(self, llm_manager, client):
        messages = [{"role": "user", "content": "Hello"}]

        assert await llm_manager.complete(messages, max_tokens=50) == "Test response"

        kwargs = client.chat.completions.create.await_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["max_tokens"] == 50
        assert kwargs["messages"] == messages

    @pytest.mark.asyncio
    async def test_complete_json(self, llm_manager, client):
        client.chat.completions.create.return_value = completion('{"needsRefinement": false}')

        result = await llm_manager.complete_json([{"role": "user", "content": "Evaluate"}])

        assert result == {"needsRefinement": False}
        assert client.chat.completions.create.await_args.kwargs["response_format"] == {"type": "json_object"}

    @pytest.mark.asyncio
    async def test_stream(self, llm_manager, client):
        async def chunks():
            for text in ["Hel", None, "lo"]:
                yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=text))])
            yield SimpleNamespace(choices=[])

        client.chat.completions.create.return_value = chunks()

        tokens = [token async for token in llm_manager.stream([{"role": "user", "content": "Hi"}])]

        assert tokens == ["Hel", "lo"]
        assert client.chat.completions.create.await_args.kwargs["stream"] is True

    @pytest.mark.asyncio
    async def test_embed(self, llm_manager, client):
        assert await llm_manager.embed("Acme") == [0.5, 0.5]
        assert client.embeddings.create.await_args.kwargs["model"] == "text-embedding-3-large"

    @pytest.mark.asyncio
    async def test_errors_propagate(self, llm_manager, client):
        client.chat.completions.create.side_effect = RuntimeError("rate limited")

        with pytest.raises(RuntimeError):
            await llm_manager.complete([{"role": "user", "content": "Hi"}])

    @pytest.mark.asyncio
    async def test_unknown_provider(self, llm_manager):
        with pytest.raises(ValueError):
            await llm_manager.complete([], provider="mistral")

    @pytest.mark.asyncio
    async def test_close(self, llm_manager, client):
        await llm_manager.close()

        client.close.assert_awaited_once()


class TestAnthropicManager:
    """Test the Anthropic-backed manager."""

    @pytest.fixture
    def client(self):
        client = Mock()
        client.messages.create = AsyncMock(return_value=SimpleNamespace(content=[
            SimpleNamespace(type="text", text='{"queryType": "relational"}'),
        ]))
        return client

    @pytest.fixture
    def llm_manager(self, client, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = {"llm": {"default_provider": "anthropic", "anthropic": {"api_key": "test_key"}}}
        with patch("anthropic.AsyncAnthropic", return_value=client):
            return LLMManager(config)

    @pytest.mark.asyncio
    async def test_system_prompt_is_separated(self, llm_manager, client):
        result = await llm_manager.complete_json([
            {"role": "system", "content": "Classify"},
            {"role": "user", "content": "How is Acme related to Widgetco?"},
        ])

        assert result == {"queryType": "relational"}
        kwargs = client.messages.create.await_args.kwargs
        assert kwargs["system"] == "Classify"
        assert all(m["role"] != "system" for m in kwargs["messages"])
        assert kwargs["messages"][-1]["content"].startswith("Respond ONLY")

    @pytest.mark.asyncio
    async def test_embedding_requires_openai_key(self, llm_manager):
        with pytest.raises(NotImplementedError):
            await llm_manager.embed("Acme")


class TestProviderSelection:
    """Test provider availability handling."""

    def test_no_providers(self):
        with pytest.raises(ValueError):
            LLMManager({"llm": {}})

    def test_unavailable_default_falls_back(self):
        config = {"llm": {"default_provider": "anthropic", "openai": {"api_key": "test_key"}}}
        with patch("openai.AsyncOpenAI"):
            manager = LLMManager(config)

        assert manager.default_provider == "openai"
