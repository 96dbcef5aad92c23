"""
Completion Engine — the external AI text-completion collaborator.

One operation: complete(system, messages, max_tokens) → text.
Supports both OpenAI and Anthropic chat APIs. Every failure mode
(client unavailable, API error, timeout, empty output) is raised as
AICompletionError so callers have a single thing to catch.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from config.settings import LLMConfig, get_settings

logger = structlog.get_logger()


class AICompletionError(Exception):
    """The AI collaborator could not produce a usable completion."""


class CompletionEngine:
    """
    Thin async wrapper over the configured LLM provider.
    The SDK client is created lazily on first use.
    """

    def __init__(self, config: Optional[LLMConfig] = None, timeout_seconds: float = 30.0):
        self._config = config or get_settings().llm
        self._client = None
        self._provider = self._config.provider
        self._timeout = timeout_seconds

    @property
    def is_openai(self) -> bool:
        return self._provider == "openai"

    @property
    def model(self) -> str:
        return self._config.model

    def _get_client(self):
        if self._client is None:
            if self.is_openai:
                from openai import AsyncOpenAI
                self._client = AsyncOpenAI(api_key=self._config.api_key)
            else:
                import anthropic
                self._client = anthropic.AsyncAnthropic(api_key=self._config.api_key)
            logger.info("llm_client_initialized", provider=self._provider, model=self._config.model)
        return self._client

    async def _call_llm(self, system: str, messages: list[dict[str, str]], max_tokens: int) -> str:
        client = self._get_client()

        if self.is_openai:
            # OpenAI: system prompt is a message in the messages list
            response = await client.chat.completions.create(
                model=self._config.model,
                max_tokens=max_tokens,
                temperature=self._config.temperature,
                messages=[{"role": "system", "content": system}] + messages,
            )
            return response.choices[0].message.content or ""

        # Anthropic: system prompt is a separate parameter
        response = await client.messages.create(
            model=self._config.model,
            max_tokens=max_tokens,
            temperature=self._config.temperature,
            system=system,
            messages=messages,
        )
        return response.content[0].text if response.content else ""

    async def complete(
        self,
        system: str,
        messages: list[dict[str, str]],
        max_tokens: Optional[int] = None,
    ) -> str:
        max_tokens = max_tokens or self._config.max_tokens
        try:
            text = await asyncio.wait_for(
                self._call_llm(system, messages, max_tokens),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("llm_timeout", provider=self._provider, timeout=self._timeout)
            raise AICompletionError("completion timed out") from e
        except Exception as e:
            logger.error("llm_generation_failed", provider=self._provider, error=str(e))
            raise AICompletionError(str(e)) from e

        text = (text or "").strip()
        if not text:
            raise AICompletionError("empty completion")
        return text
