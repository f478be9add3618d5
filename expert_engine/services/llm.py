# =============================================================================
# Multi-Provider LLM Abstraction: Pluggable Text Generation Backend
# =============================================================================
#
# Provides a common interface for LLM completions and token streams, with
# concrete implementations for Anthropic (Claude) and OpenAI-compatible APIs
# (DeepSeek, Qwen, GLM, OpenAI).
#
# Protocol (structural typing) over ABC, matching the VectorStore and
# Retriever protocols: any object with `complete()` and `stream()` works,
# which is what the tests rely on when they hand the engine a fake.
#
# Native SDKs are used directly. The Anthropic provider can attach the
# server-side web search tool; answers may use it for supplementary
# knowledge but only `[Source N]` markers count as citations.
#
# ARCHITECTURE:
#   LLMProvider (Protocol)
#   ├── AnthropicProvider         Claude via native Anthropic SDK
#   │   ├── complete()            system prompt as top-level kwarg
#   │   └── stream()              text deltas + web search tool events
#   ├── OpenAICompatibleProvider  Any OpenAI-compatible API
#   │   ├── complete()            system prompt as message role
#   │   └── stream()              text deltas only
#   └── get_llm_provider()        Singleton factory, reads from config
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Protocol, Union

from expert_engine.config import settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data Structures
# ---------------------------------------------------------------------------


@dataclass
class LLMResponse:
    """
    Standardised response from any LLM provider.

    Normalises the different response formats (Anthropic vs OpenAI)
    into a single structure that downstream code can consume.
    """

    content: str           # The generated text (all text blocks joined)
    model: str             # Model identifier (e.g., "claude-sonnet-4-6")
    input_tokens: int      # Tokens consumed by the prompt
    output_tokens: int     # Tokens generated in the response


@dataclass
class TextDelta:
    """An increment of generated answer text."""

    text: str


@dataclass
class ToolCall:
    """The model invoked a server-side tool (currently only web search)."""

    tool_name: str


@dataclass
class ToolResult:
    """A server-side tool returned its result to the model."""

    tool_name: str


LLMStreamPart = Union[TextDelta, ToolCall, ToolResult]


# ---------------------------------------------------------------------------
# Protocol Definition
# ---------------------------------------------------------------------------


class LLMProvider(Protocol):
    """
    Protocol defining the LLM provider interface.

    Both implementations provide `complete()` and `stream()`.
    """

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        web_search: bool = False,
    ) -> LLMResponse:
        """
        Generate a completion from the LLM.

        Args:
            messages: Conversation messages as dicts with "role" and "content".
                Roles: "user", "assistant" (no "system": use the system param).
            system: System prompt for the LLM. Handled differently per provider:
                - Anthropic: top-level `system=` kwarg
                - OpenAI: prepended as {"role": "system", ...} message
            temperature: Override sampling temperature (default from config).
            max_tokens: Override max output tokens (default from config).
            web_search: Offer the supplementary web search tool when the
                provider supports it. Ignored otherwise.

        Returns:
            LLMResponse with generated text and usage metrics.
        """
        ...

    def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        web_search: bool = False,
    ) -> AsyncIterator[LLMStreamPart]:
        """Yield TextDelta / ToolCall / ToolResult parts as they arrive."""
        ...


# ---------------------------------------------------------------------------
# Implementation 1: Anthropic (Claude)
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """
    Anthropic Claude provider using the native SDK.

    KEY API DIFFERENCE: Anthropic takes system prompts as a top-level
    `system=` kwarg, NOT as a message with role "system".
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
    ) -> None:
        from anthropic import AsyncAnthropic

        resolved_key = api_key or settings.llm_api_key or settings.anthropic_api_key
        if not resolved_key:
            raise ValueError(
                "No Anthropic API key configured. Set LLM_API_KEY or "
                "ANTHROPIC_API_KEY in .env"
            )

        self._client = AsyncAnthropic(api_key=resolved_key)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info("Initialized AnthropicProvider (model=%s)", self._model)

    def _request_kwargs(
        self,
        messages: list[dict[str, str]],
        system: str | None,
        temperature: float | None,
        max_tokens: int | None,
        web_search: bool,
    ) -> dict:
        kwargs: dict = {
            "model": self._model,
            "messages": messages,
            "max_tokens": max_tokens if max_tokens is not None else self._max_tokens,
            "temperature": (
                temperature if temperature is not None else self._temperature
            ),
        }
        if system:
            kwargs["system"] = system
        if web_search and settings.web_search_enabled:
            kwargs["tools"] = [
                {
                    "type": "web_search_20250305",
                    "name": "web_search",
                    "max_uses": settings.web_search_max_uses,
                }
            ]
        return kwargs

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        web_search: bool = False,
    ) -> LLMResponse:
        """Generate a completion using Claude."""
        kwargs = self._request_kwargs(
            messages, system, temperature, max_tokens, web_search,
        )
        response = await self._client.messages.create(**kwargs)

        # With tools enabled the answer arrives as several text blocks
        # interleaved with tool blocks.
        content = "".join(
            block.text for block in response.content if block.type == "text"
        )

        return LLMResponse(
            content=content,
            model=response.model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        web_search: bool = False,
    ) -> AsyncIterator[LLMStreamPart]:
        """Stream a completion from Claude, surfacing web search activity."""
        kwargs = self._request_kwargs(messages, system, None, None, web_search)

        async with self._client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "text":
                    yield TextDelta(text=event.text)
                elif event.type == "content_block_start":
                    block = event.content_block
                    if block.type == "server_tool_use":
                        yield ToolCall(tool_name=block.name)
                    elif block.type == "web_search_tool_result":
                        yield ToolResult(tool_name="web_search")


# ---------------------------------------------------------------------------
# Implementation 2: OpenAI-Compatible (DeepSeek, Qwen, GLM, etc.)
# ---------------------------------------------------------------------------


class OpenAICompatibleProvider:
    """
    OpenAI-compatible provider for any API that speaks the OpenAI chat completions API.

    Switching providers is a config change:
        LLM_PROVIDER=openai_compatible
        LLM_BASE_URL=https://api.deepseek.com/v1
        LLM_API_KEY=your-key
        LLM_MODEL=deepseek-chat

    There is no portable server-side web search tool, so `web_search`
    requests are ignored.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
    ) -> None:
        from openai import AsyncOpenAI

        resolved_key = api_key or settings.llm_api_key or settings.openai_api_key
        if not resolved_key:
            raise ValueError(
                "No API key configured for OpenAI-compatible provider. "
                "Set LLM_API_KEY in .env"
            )

        client_kwargs: dict = {"api_key": resolved_key}
        resolved_base_url = base_url or settings.llm_base_url
        if resolved_base_url:
            client_kwargs["base_url"] = resolved_base_url

        self._client = AsyncOpenAI(**client_kwargs)
        self._model = model or settings.llm_model
        self._temperature = settings.llm_temperature
        self._max_tokens = settings.llm_max_tokens

        logger.info(
            "Initialized OpenAICompatibleProvider (model=%s, base_url=%s)",
            self._model,
            resolved_base_url or "https://api.openai.com/v1",
        )

    @staticmethod
    def _with_system(
        messages: list[dict[str, str]], system: str | None,
    ) -> list[dict[str, str]]:
        # OpenAI: system prompt goes as the first message
        all_messages: list[dict[str, str]] = []
        if system:
            all_messages.append({"role": "system", "content": system})
        all_messages.extend(messages)
        return all_messages

    async def complete(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        web_search: bool = False,
    ) -> LLMResponse:
        """Generate a completion using an OpenAI-compatible API."""
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=self._with_system(messages, system),
            max_tokens=max_tokens if max_tokens is not None else self._max_tokens,
            temperature=temperature if temperature is not None else self._temperature,
        )

        content = response.choices[0].message.content or ""

        # Token counts: OpenAI uses different field names than Anthropic
        usage = response.usage
        input_tokens = usage.prompt_tokens if usage else 0
        output_tokens = usage.completion_tokens if usage else 0

        return LLMResponse(
            content=content,
            model=response.model or self._model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

    async def stream(
        self,
        messages: list[dict[str, str]],
        system: str | None = None,
        web_search: bool = False,
    ) -> AsyncIterator[LLMStreamPart]:
        """Stream a completion as text deltas."""
        response = await self._client.chat.completions.create(
            model=self._model,
            messages=self._with_system(messages, system),
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            stream=True,
        )
        async for chunk in response:
            if chunk.choices and chunk.choices[0].delta.content:
                yield TextDelta(text=chunk.choices[0].delta.content)


# ---------------------------------------------------------------------------
# Factory Function
# ---------------------------------------------------------------------------

# Lazy singleton: avoid re-creating the client on every request
_provider: AnthropicProvider | OpenAICompatibleProvider | None = None


def get_llm_provider() -> AnthropicProvider | OpenAICompatibleProvider:
    """
    Factory that returns the configured LLM provider.

    Reads `llm_provider` from settings:
    - "anthropic" → AnthropicProvider (Claude)
    - "openai_compatible" → OpenAICompatibleProvider (DeepSeek, Qwen, etc.)

    Raises:
        ValueError: If the provider name is unknown or no API key is set.
    """
    global _provider
    if _provider is None:
        if settings.llm_provider == "openai_compatible":
            _provider = OpenAICompatibleProvider()
        elif settings.llm_provider == "anthropic":
            _provider = AnthropicProvider()
        else:
            raise ValueError(
                f"Unknown LLM provider: '{settings.llm_provider}'. "
                "Supported: 'anthropic', 'openai_compatible'"
            )
    return _provider
