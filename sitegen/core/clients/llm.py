"""
LLM Completion Client
=====================

Thin httpx client for an OpenAI-compatible chat completions endpoint.

Transient failures (timeouts, connection errors, 408/409/429/5xx) are
retried with bounded exponential backoff; anything that survives the last
attempt surfaces as TransientUpstreamError and fails the calling task.
"""

import asyncio
import json
import re
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from sitegen.core.config import settings
from sitegen.core.exceptions import TransientUpstreamError, UpstreamError, UpstreamResponseError

logger = structlog.get_logger()


# ==========================================================================
# Cost Table (USD per 1M tokens: input, output)
# ==========================================================================

MODEL_COSTS: dict[str, tuple[float, float]] = {
    "gpt-4o": (2.50, 10.00),
    "gpt-4o-mini": (0.15, 0.60),
    "gpt-4.1": (2.00, 8.00),
    "gpt-4.1-mini": (0.40, 1.60),
    "claude-sonnet-4": (3.00, 15.00),
    "claude-3-5-haiku": (0.80, 4.00),
}
DEFAULT_COST = (2.50, 10.00)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    rates = MODEL_COSTS.get(model)
    if rates is None:
        # Dated snapshots, e.g. gpt-4o-2024-08-06
        prefixes = sorted((name for name in MODEL_COSTS if model.startswith(name)), key=len, reverse=True)
        rates = MODEL_COSTS[prefixes[0]] if prefixes else DEFAULT_COST
    input_rate, output_rate = rates
    return round((input_tokens * input_rate + output_tokens * output_rate) / 1_000_000, 6)


_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.MULTILINE)


def parse_json_content(content: str) -> dict[str, Any]:
    """Parse a JSON object out of a completion, tolerating markdown fences."""
    text = _FENCE.sub("", content.strip()).strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise UpstreamResponseError(f"Completion is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise UpstreamResponseError("Completion JSON is not an object")
    return data


@dataclass
class Completion:
    content: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def cost_usd(self) -> float:
        return calculate_cost(self.model, self.input_tokens, self.output_tokens)

    def json(self) -> dict[str, Any]:
        return parse_json_content(self.content)


class CompletionClient:
    """
    Client for chat completions.

    Args:
        api_key: Bearer key; the client is disabled without one
        base_url: API root, e.g. https://api.openai.com/v1
        max_attempts: Total attempts per call, including the first
        backoff: Delay before the second attempt; doubles per attempt
        max_backoff: Upper bound on a single delay
    """

    RETRY_STATUSES = frozenset({408, 409, 429, 500, 502, 503, 504})

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        default_model: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff: Optional[float] = None,
        max_backoff: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.base_url = (base_url or settings.OPENAI_BASE_URL).rstrip("/")
        self.default_model = default_model or settings.LLM_DEFAULT_MODEL
        self.max_attempts = max(1, max_attempts or settings.LLM_MAX_ATTEMPTS)
        self.backoff = backoff if backoff is not None else settings.LLM_BACKOFF_SECONDS
        self.max_backoff = max_backoff if max_backoff is not None else settings.LLM_MAX_BACKOFF_SECONDS
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.LLM_TIMEOUT_SECONDS)
        self._sleep = sleep

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _delay(self, attempt: int) -> float:
        return min(self.backoff * (2 ** (attempt - 1)), self.max_backoff)

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        purpose: str,
        model: Optional[str] = None,
        max_tokens: int = 4096,
        temperature: float = 0.7,
        json_mode: bool = True,
    ) -> Completion:
        """
        Run one chat completion.

        Args:
            purpose: Caller label, used in logs
        """
        if not self.enabled:
            raise UpstreamError("LLM completion API key is not configured", code="LLM_NOT_CONFIGURED")

        model = model or self.default_model
        payload: dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_tokens,
            "temperature": temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        last_error = ""
        last_status: Optional[int] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.post(
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
            except (httpx.TimeoutException, httpx.TransportError) as e:
                last_error = f"{type(e).__name__}: {e}"
                last_status = None
            else:
                if response.status_code in self.RETRY_STATUSES:
                    last_error = f"HTTP {response.status_code}"
                    last_status = response.status_code
                elif response.status_code >= 400:
                    raise UpstreamError(
                        f"Completion request failed with HTTP {response.status_code}: {response.text[:200]}",
                        status_code=response.status_code,
                    )
                else:
                    return self._parse(response.json(), model, purpose)

            if attempt < self.max_attempts:
                delay = self._delay(attempt)
                logger.warning(
                    "llm_retry",
                    purpose=purpose,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=last_error,
                )
                await self._sleep(delay)

        raise TransientUpstreamError(
            f"Completion for {purpose} failed after {self.max_attempts} attempts: {last_error}",
            status_code=last_status,
        )

    def _parse(self, body: dict[str, Any], model: str, purpose: str) -> Completion:
        try:
            content = body["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise UpstreamResponseError(f"Malformed completion response: {e}") from e
        usage = body.get("usage") or {}
        completion = Completion(
            content=content,
            model=body.get("model") or model,
            input_tokens=int(usage.get("prompt_tokens", 0)),
            output_tokens=int(usage.get("completion_tokens", 0)),
        )
        logger.debug(
            "llm_completion",
            purpose=purpose,
            model=completion.model,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
        )
        return completion

    async def aclose(self) -> None:
        await self._client.aclose()
