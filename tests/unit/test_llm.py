"""Tests for the OpenAI-compatible LLM provider."""

import json

import httpx
import pytest
from openai import AsyncOpenAI

from library_recommend.config import LLMConfig
from library_recommend.errors import UpstreamError
from library_recommend.llm import LLMProvider, StreamChunk
from library_recommend.prompts import KEYWORD_SCHEMA


def completion(content):
    return {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 0,
        "model": "test-model",
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": content},
                "finish_reason": "stop",
            }
        ],
    }


def stream_body(deltas, finish_reason="stop") -> bytes:
    lines = []
    for i, delta in enumerate(deltas):
        chunk = {
            "id": "chatcmpl-1",
            "object": "chat.completion.chunk",
            "created": 0,
            "model": "test-model",
            "choices": [
                {
                    "index": 0,
                    "delta": {"content": delta},
                    "finish_reason": finish_reason if i == len(deltas) - 1 else None,
                }
            ],
        }
        lines.append(f"data: {json.dumps(chunk)}\n\n")
    lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


def make_provider(handler, **config) -> LLMProvider:
    client = AsyncOpenAI(
        api_key="test-key",
        base_url="http://llm.test/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return LLMProvider(LLMConfig(model="summary-model", **config), client=client)


class TestComplete:
    """Tests for LLMProvider.complete."""

    async def test_returns_parsed_json(self):
        """Should send the keyword model and schema and parse the JSON reply."""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(200, json=completion('{"keywords": ["cats"], "exclude": []}'))

        provider = make_provider(handler, keyword_model="keyword-model")
        result = await provider.complete([{"role": "user", "content": "cats"}], KEYWORD_SCHEMA)

        assert result == {"keywords": ["cats"], "exclude": []}
        body = requests[0]
        assert body["model"] == "keyword-model"
        assert body["temperature"] == 0.1
        assert body["response_format"]["type"] == "json_schema"
        assert body["response_format"]["json_schema"]["name"] == "keywordExtraction"

    async def test_invalid_json(self):
        provider = make_provider(lambda request: httpx.Response(200, json=completion("cats, dogs")))
        with pytest.raises(UpstreamError):
            await provider.complete([{"role": "user", "content": "cats"}])

    async def test_empty_content(self):
        provider = make_provider(lambda request: httpx.Response(200, json=completion(None)))
        with pytest.raises(UpstreamError):
            await provider.complete([{"role": "user", "content": "cats"}])

    async def test_http_error(self):
        """Should surface upstream HTTP failures as UpstreamError."""
        provider = make_provider(
            lambda request: httpx.Response(500, json={"error": {"message": "overloaded"}})
        )
        with pytest.raises(UpstreamError) as exc_info:
            await provider.complete([{"role": "user", "content": "cats"}])
        assert exc_info.value.status_code == 502


class TestStreamComplete:
    """Tests for LLMProvider.stream_complete."""

    async def test_yields_chunks(self):
        """Should stream deltas with the finish reason on the last chunk."""
        requests = []

        def handler(request):
            requests.append(json.loads(request.content))
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=stream_body(["Try ", "these."]),
            )

        provider = make_provider(handler)
        chunks = [chunk async for chunk in provider.stream_complete([{"role": "user", "content": "x"}])]

        assert chunks == [
            StreamChunk(delta="Try ", finish_reason=None),
            StreamChunk(delta="these.", finish_reason="stop"),
        ]
        assert requests[0]["stream"] is True
        assert requests[0]["model"] == "summary-model"
        assert requests[0]["temperature"] == 0.4

    async def test_aclose_mid_stream(self):
        """Should allow closing the stream early, more than once."""
        def handler(request):
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream"},
                content=stream_body(["a", "b", "c"]),
            )

        provider = make_provider(handler)
        stream = provider.stream_complete([{"role": "user", "content": "x"}])
        first = await stream.__anext__()
        await stream.aclose()
        await stream.aclose()

        assert first.delta == "a"


class TestClientConstruction:
    """Tests for lazy client creation."""

    def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        provider = LLMProvider(LLMConfig())
        with pytest.raises(UpstreamError):
            provider._get_client()

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("RECOMMEND_TEST_KEY", "sk-from-env")
        provider = LLMProvider(LLMConfig(api_key_env="RECOMMEND_TEST_KEY"))
        assert provider._get_client().api_key == "sk-from-env"

    def test_ollama_needs_no_key(self, monkeypatch):
        """Should use a placeholder key for Ollama endpoints."""
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        provider = LLMProvider(
            LLMConfig(provider="ollama", base_url="http://localhost:11434/v1", model="llama3.2")
        )
        client = provider._get_client()
        assert client.api_key == "ollama"
        assert str(client.base_url).startswith("http://localhost:11434/v1")

    async def test_aclose(self):
        provider = LLMProvider(LLMConfig(api_key="sk-test"))
        provider._get_client()
        await provider.aclose()
        assert provider._client is None
        await provider.aclose()
