"""
OpenAI-compatible chat completion provider.

Works against OpenAI itself or any server that speaks the same API
(e.g. Ollama's /v1 endpoint). The SDK client is created on first use and
owned by the provider instance.
"""

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import openai
from openai import AsyncOpenAI

from .config import LLMConfig
from .errors import UpstreamError

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]


@dataclass(frozen=True)
class StreamChunk:
    """One increment from a streaming completion."""

    delta: str | None = None
    finish_reason: str | None = None


class LLMProvider:
    """Chat completion capability used by keyword extraction and summaries."""

    def __init__(self, config: LLMConfig, client: AsyncOpenAI | None = None):
        self.config = config
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is not None:
            return self._client

        api_key = self.config.get_api_key()
        if not api_key and self.config.provider == "ollama":
            # Ollama ignores the key but the SDK insists on one
            api_key = "ollama"
        if not api_key:
            raise UpstreamError("LLM API key is not configured.")

        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=self.config.base_url,
            timeout=self.config.timeout_seconds,
        )
        return self._client

    async def complete(
        self,
        messages: list[ChatMessage],
        schema: dict[str, Any] | None = None,
    ) -> Any:
        """
        Run a non-streaming completion and return its content parsed as JSON.

        Args:
            messages: Chat messages
            schema: Optional JSON schema definition for structured output

        Raises:
            UpstreamError: on transport failure, empty content or invalid JSON
        """
        client = self._get_client()
        kwargs: dict[str, Any] = {}
        if schema is not None:
            kwargs["response_format"] = {"type": "json_schema", "json_schema": schema}

        try:
            completion = await client.chat.completions.create(
                model=self.config.get_keyword_model(),
                messages=messages,
                temperature=self.config.keyword_temperature,
                max_tokens=self.config.max_tokens,
                **kwargs,
            )
        except openai.OpenAIError as e:
            raise UpstreamError(f"Completion request failed: {e}") from e

        content = completion.choices[0].message.content if completion.choices else None
        if not content:
            raise UpstreamError("Completion returned no content.")

        try:
            return json.loads(content)
        except ValueError as e:
            raise UpstreamError("Completion content was not valid JSON.") from e

    async def stream_complete(self, messages: list[ChatMessage]) -> AsyncIterator[StreamChunk]:
        """
        Stream a completion as StreamChunks.

        This is an async generator; ``aclose()`` on it closes the upstream
        HTTP response.
        """
        client = self._get_client()
        try:
            stream = await client.chat.completions.create(
                model=self.config.model,
                messages=messages,
                temperature=self.config.summary_temperature,
                max_tokens=self.config.max_tokens,
                stream=True,
            )
        except openai.OpenAIError as e:
            raise UpstreamError(f"Streaming request failed: {e}") from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta.content if choice.delta is not None else None
                yield StreamChunk(delta=delta, finish_reason=choice.finish_reason)
        finally:
            logger.debug("Closing upstream completion stream")
            await stream.close()

    async def aclose(self) -> None:
        """Close the underlying SDK client, if one was created."""
        if self._client is not None:
            await self._client.close()
            self._client = None
