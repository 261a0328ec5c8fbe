"""LLM client — unified async interface for Claude and GPT-4o with retries."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any

import anthropic
import openai

from hydra.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.InternalServerError,
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


@dataclass
class LLMResponse:
    """Parsed completion plus the usage it was billed for."""
    data: dict[str, Any]
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0
    raw: str = field(default="", repr=False)


class LLMClient:
    """Unified async client used by the LLM-backed decompiler.

    Features:
    - Primary (Claude) + fallback (GPT-4o) with automatic failover
    - Exponential backoff retries on rate limits / transient errors
    - Token usage tracking and per-call cost estimation
    """

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or get_settings()
        self._anthropic = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self._openai = openai.AsyncOpenAI(api_key=settings.openai_api_key)
        self._primary_model = settings.primary_llm_model
        self._fallback_model = settings.fallback_llm_model
        self._max_tokens = settings.llm_max_tokens
        self._temperature = settings.llm_temperature
        self._max_retries = settings.llm_max_retries
        self._retry_base_delay = settings.llm_retry_base_delay
        self._input_cost = settings.llm_input_cost_per_mtok
        self._output_cost = settings.llm_output_cost_per_mtok
        self._total_input_tokens = 0
        self._total_output_tokens = 0

    @property
    def token_usage(self) -> dict[str, int]:
        return {
            "input_tokens": self._total_input_tokens,
            "output_tokens": self._total_output_tokens,
        }

    def estimate_cost(self, input_tokens: int, output_tokens: int) -> float:
        """USD cost of a call at the configured per-million-token prices."""
        return (input_tokens * self._input_cost + output_tokens * self._output_cost) / 1_000_000

    async def analyze(
        self,
        system_prompt: str,
        user_prompt: str,
        response_format: dict[str, Any] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Send a prompt and return the parsed JSON response.

        Tries primary (Claude) first, falls back to GPT-4o on failure.
        Each call is retried with exponential backoff on transient errors.

        Args:
            system_prompt: System instructions
            user_prompt: User prompt
            response_format: OpenAI response format (ignored for Claude)
            temperature: Sampling temperature (defaults to settings)
            max_tokens: Max output tokens (defaults to settings)
        """
        temperature = self._temperature if temperature is None else temperature
        max_tokens = max_tokens or self._max_tokens
        try:
            return await self._retry(
                self._call_claude, self._primary_model, system_prompt, user_prompt,
                temperature, max_tokens,
            )
        except Exception as e:
            logger.warning("Claude API failed after retries: %s, falling back to %s", e, self._fallback_model)
            return await self._retry(
                self._call_openai, self._fallback_model, system_prompt,
                user_prompt, response_format, temperature, max_tokens,
            )

    async def _retry(self, fn, *args, **kwargs) -> LLMResponse:
        """Retry a function with exponential backoff."""
        last_error: Exception | None = None
        for attempt in range(self._max_retries):
            try:
                return await fn(*args, **kwargs)
            except _TRANSIENT_ERRORS as e:
                last_error = e
                delay = self._retry_base_delay * (2 ** attempt)
                logger.info("Retry %d/%d after %.1fs: %s", attempt + 1, self._max_retries, delay, e)
                await asyncio.sleep(delay)
        raise last_error  # type: ignore[misc]

    def _record(self, model: str, content: str, input_tokens: int, output_tokens: int) -> LLMResponse:
        self._total_input_tokens += input_tokens
        self._total_output_tokens += output_tokens
        return LLMResponse(
            data=self._parse_json_response(content),
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost_usd=self.estimate_cost(input_tokens, output_tokens),
            raw=content,
        )

    async def _call_claude(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        """Call Claude API (async)."""
        message = await self._anthropic.messages.create(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=[{"role": "user", "content": user_prompt}],
        )
        content = message.content[0].text
        return self._record(model, content, message.usage.input_tokens, message.usage.output_tokens)

    async def _call_openai(
        self,
        model: str,
        system_prompt: str,
        user_prompt: str,
        response_format: dict[str, Any] | None,
        temperature: float,
        max_tokens: int,
    ) -> LLMResponse:
        """Call OpenAI API (async)."""
        kwargs: dict[str, Any] = {
            "model": model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if response_format:
            kwargs["response_format"] = response_format

        response = await self._openai.chat.completions.create(**kwargs)
        usage = response.usage
        content = response.choices[0].message.content or "{}"
        return self._record(
            model,
            content,
            usage.prompt_tokens if usage else 0,
            usage.completion_tokens if usage else 0,
        )

    def _parse_json_response(self, content: str) -> dict[str, Any]:
        """Extract JSON from LLM response, handling markdown code blocks."""
        content = content.strip()

        # Handle ```json ... ``` blocks
        if content.startswith("```"):
            json_lines: list[str] = []
            in_block = False
            for line in content.split("\n"):
                if line.startswith("```") and not in_block:
                    in_block = True
                    continue
                if line.startswith("```") and in_block:
                    break
                if in_block:
                    json_lines.append(line)
            content = "\n".join(json_lines)

        try:
            return json.loads(content)
        except json.JSONDecodeError:
            # Try to find JSON object in text
            start = content.find("{")
            end = content.rfind("}") + 1
            if start >= 0 and end > start:
                try:
                    return json.loads(content[start:end])
                except json.JSONDecodeError:
                    pass
            return {"raw_response": content, "parse_error": True}
