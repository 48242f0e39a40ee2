"""OpenAI client wrapper used by AI-backed engine steps."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, fields
from typing import Any, Protocol

import httpx
from openai import APIError, APITimeoutError, BadRequestError, OpenAI, RateLimitError
from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential, wait_random

logger = logging.getLogger(__name__)

_SCHEMA_FALLBACK_TOKENS = (
    "json_schema",
    "response_format",
    "unsupported",
    "not supported",
    "invalid schema",
)


@dataclass(frozen=True, slots=True)
class LLMUsage:
    """Token usage and estimated cost of one or more LLM requests."""

    request_count: int = 0
    retry_count: int = 0
    schema_fallback_count: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    estimated_cost: float = 0.0

    def _combine(self, other: LLMUsage, sign: int) -> LLMUsage:
        return LLMUsage(
            **{
                item.name: getattr(self, item.name) + sign * getattr(other, item.name)
                for item in fields(self)
            }
        )

    def __add__(self, other: LLMUsage) -> LLMUsage:
        return self._combine(other, 1)

    def __sub__(self, other: LLMUsage) -> LLMUsage:
        return self._combine(other, -1)

    def to_dict(self) -> dict[str, Any]:
        payload = {item.name: getattr(self, item.name) for item in fields(self)}
        payload["estimated_cost"] = round(self.estimated_cost, 6)
        return payload


class LLMJsonClient(Protocol):
    """Protocol for clients that return structured JSON."""

    def complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> dict:
        """Generate a JSON object for the given prompts."""


class OpenAIJsonClient:
    """JSON-focused wrapper around OpenAI chat completions.

    Every request carries a bounded timeout. Rate limits, timeouts and server
    errors are retried with exponential backoff; the final failure propagates.
    Usage accumulates across calls and is priced per million tokens.
    """

    def __init__(
        self,
        *,
        api_key: str,
        model: str,
        base_url: str | None = None,
        temperature: float = 0.2,
        timeout_seconds: float = 120.0,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        input_price_per_million: float = 0.0,
        output_price_per_million: float = 0.0,
    ) -> None:
        # The SDK's own retry loop is disabled so tenacity owns backoff.
        self._client = OpenAI(
            api_key=api_key,
            base_url=base_url or None,
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            max_retries=0,
        )
        self.model = model
        self._temperature = temperature
        self._max_retries = max_retries
        self._backoff_seconds = backoff_seconds
        self._input_price = input_price_per_million
        self._output_price = output_price_per_million
        self._usage_lock = threading.Lock()
        self._usage = LLMUsage()

    def _add_usage(self, usage: LLMUsage) -> None:
        with self._usage_lock:
            self._usage = self._usage + usage

    def _price(self, prompt_tokens: int, completion_tokens: int) -> float:
        return (
            prompt_tokens / 1_000_000 * self._input_price
            + completion_tokens / 1_000_000 * self._output_price
        )

    def _is_retryable(self, exc: BaseException) -> bool:
        if isinstance(exc, (RateLimitError, APITimeoutError)):
            return True
        if isinstance(exc, BadRequestError):
            return False
        return isinstance(exc, APIError)

    def _create_completion(self, *, messages: list[dict], response_format: dict):
        """Create one chat completion, retrying transient errors, and record its usage."""

        attempts = 0
        retryer = Retrying(
            retry=retry_if_exception(self._is_retryable),
            wait=wait_exponential(
                multiplier=self._backoff_seconds,
                min=self._backoff_seconds,
                max=self._backoff_seconds * 8,
            )
            + wait_random(0.0, 0.25),
            stop=stop_after_attempt(max(1, self._max_retries)),
            reraise=True,
        )
        for attempt in retryer:
            with attempt:
                attempts += 1
                if attempts > 1:
                    logger.info("Retrying OpenAI request (attempt %d).", attempts)
                response = self._client.chat.completions.create(
                    model=self.model,
                    temperature=self._temperature,
                    response_format=response_format,
                    messages=messages,
                )

        usage = getattr(response, "usage", None)
        prompt_tokens = int(getattr(usage, "prompt_tokens", 0) or 0)
        completion_tokens = int(getattr(usage, "completion_tokens", 0) or 0)
        self._add_usage(
            LLMUsage(
                request_count=1,
                retry_count=attempts - 1,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                total_tokens=int(getattr(usage, "total_tokens", 0) or 0)
                or prompt_tokens + completion_tokens,
                estimated_cost=self._price(prompt_tokens, completion_tokens),
            )
        )
        return response

    def complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        schema_name: str | None = None,
        json_schema: dict | None = None,
        strict_schema: bool = True,
    ) -> dict:
        """Call the OpenAI API and parse a JSON object from the response.

        Endpoints that reject ``json_schema`` response formats are retried once
        in plain ``json_object`` mode.
        """

        messages = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        if json_schema is None:
            response = self._create_completion(
                messages=messages, response_format={"type": "json_object"}
            )
        else:
            schema_format = {
                "type": "json_schema",
                "json_schema": {
                    "name": schema_name or "structured_output",
                    "schema": json_schema,
                    "strict": bool(strict_schema),
                },
            }
            try:
                response = self._create_completion(messages=messages, response_format=schema_format)
            except BadRequestError as exc:
                if not any(token in str(exc).lower() for token in _SCHEMA_FALLBACK_TOKENS):
                    raise
                logger.warning("Structured output rejected by endpoint, falling back to json_object.")
                self._add_usage(LLMUsage(schema_fallback_count=1))
                response = self._create_completion(
                    messages=messages, response_format={"type": "json_object"}
                )

        content = response.choices[0].message.content
        if content is None:
            raise ValueError("Model returned empty content for JSON response.")
        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Model response was not valid JSON: {content[:200]}") from exc
        if not isinstance(payload, dict):
            raise ValueError(f"Expected JSON object, got {type(payload).__name__}.")
        return payload

    def usage(self) -> LLMUsage:
        """Return cumulative usage of this client instance."""

        with self._usage_lock:
            return self._usage

    def metrics_snapshot(self) -> dict:
        """Return cumulative usage as a JSON-ready dict tagged with the model."""

        return {**self.usage().to_dict(), "model": self.model}
