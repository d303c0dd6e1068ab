"""Chat-completion client for structured CV extraction.

Talks to an OpenAI-compatible `/chat/completions` endpoint over httpx in JSON
object mode. Rate limiting (HTTP 429) is retried here with exponential
backoff; every other failure is raised as a CompletionError subclass and left
to the caller (the extraction layer turns it into an empty, failed result).

Any `async (system_prompt, user_prompt) -> str` callable can stand in for
`CompletionClient.complete`, which keeps the pipelines testable offline.
"""
from __future__ import annotations

import logging
import time
from functools import lru_cache
from typing import Awaitable, Callable

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential
from tenacity.wait import wait_base

from cvrecon.config import settings

logger = logging.getLogger(__name__)

CompletionFn = Callable[[str, str], Awaitable[str]]


class CompletionError(Exception):
    """Base for completion failures. `retryable` marks transient conditions."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "UNKNOWN",
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.status_code = status_code


class CompletionTimeout(CompletionError):
    """Request exceeded the configured timeout."""

    def __init__(self, message: str = "Completion request timed out", **kwargs) -> None:
        super().__init__(message, code="TIMEOUT", retryable=True, **kwargs)


class CompletionRateLimited(CompletionError):
    """HTTP 429 from the service."""

    def __init__(self, message: str = "Completion service rate limited", **kwargs) -> None:
        super().__init__(message, code="RATE_LIMITED", retryable=True, **kwargs)


class CompletionUnavailable(CompletionError):
    """5xx or transport failure."""

    def __init__(self, message: str = "Completion service unavailable", **kwargs) -> None:
        super().__init__(message, code="UNAVAILABLE", retryable=True, **kwargs)


class CompletionBadResponse(CompletionError):
    """Response body without usable message content."""

    def __init__(self, message: str = "Completion response invalid", **kwargs) -> None:
        super().__init__(message, code="BAD_RESPONSE", retryable=True, **kwargs)


class CompletionClient:
    """OpenAI-compatible chat completions over httpx."""

    def __init__(
        self,
        *,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout_seconds: float | None = None,
        rate_limit_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        wait: wait_base | None = None,
    ) -> None:
        cfg = settings.completion
        self.api_key = api_key if api_key is not None else cfg.api_key
        self.base_url = base_url or cfg.base_url
        self.model = model or cfg.model
        self.temperature = cfg.temperature if temperature is None else temperature
        self.max_tokens = max_tokens or cfg.max_tokens
        self.timeout_seconds = timeout_seconds or cfg.timeout_seconds
        self.rate_limit_retries = rate_limit_retries or cfg.rate_limit_retries
        self._transport = transport
        self._wait = wait or wait_exponential(multiplier=1, min=2, max=10)

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        """Run one chat completion and return the raw message content.

        Args:
            system_prompt: Instructions and output schema
            user_prompt: Text to analyze

        Returns:
            Message content (expected to be a JSON object)

        Raises:
            CompletionError: Timeout, rate limit after all retries, upstream
                failure or a response without content
        """
        if not self.api_key:
            raise CompletionError("Completion API key is not configured", code="NOT_CONFIGURED")

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.rate_limit_retries),
            wait=self._wait,
            retry=retry_if_exception_type(CompletionRateLimited),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"Retrying rate-limited completion (attempt {attempt.retry_state.attempt_number})")
                return await self._request(system_prompt, user_prompt)

        raise CompletionError("Completion retries exhausted")  # pragma: no cover

    async def _request(self, system_prompt: str, user_prompt: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "response_format": {"type": "json_object"},
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=self._transport,
            ) as client:
                response = await client.post("/chat/completions", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise CompletionTimeout(f"Completion timed out after {self.timeout_seconds}s") from e
        except httpx.TransportError as e:
            raise CompletionUnavailable(f"Completion transport error: {e}") from e

        elapsed = time.perf_counter() - started
        status = response.status_code
        if status == 429:
            raise CompletionRateLimited(status_code=status)
        if status >= 500:
            raise CompletionUnavailable(f"Completion service returned {status}", status_code=status)
        if status >= 400:
            raise CompletionError(
                f"Completion request rejected with {status}: {response.text[:200]}",
                code="REJECTED",
                status_code=status,
            )

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CompletionBadResponse(f"Unexpected completion payload: {e}") from e
        if not content:
            raise CompletionBadResponse("Completion returned empty content")

        logger.debug(f"Completion finished in {elapsed:.2f}s ({len(content)} chars)")
        return content


@lru_cache(maxsize=1)
def get_completion_client() -> CompletionClient:
    """Shared client built from COMPLETION_* settings."""
    return CompletionClient()
