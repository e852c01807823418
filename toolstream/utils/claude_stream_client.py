from abc import ABC, abstractmethod
from anthropic import AsyncAnthropic, APIStatusError, APIError, APIConnectionError, APITimeoutError
from typing import Optional, Dict, List, Any, AsyncIterator
import asyncio
import random
import httpx

from toolstream.core.config import settings
from toolstream.core.exceptions import FatalModelError
from toolstream.core.logging_config import logger
from toolstream.modules.orchestrator.stream_decoder import iter_sse_events

RETRYABLE_ERRORS = ['overloaded_error', 'rate_limit_error', 'api_error']
RETRYABLE_STATUS_CODES = [429, 500, 502, 503, 529]
ANTHROPIC_VERSION = "2023-06-01"


def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable (overload, rate limit, network issues, etc.)"""
    if isinstance(error, (APIConnectionError, APITimeoutError)):
        return True

    if isinstance(error, (httpx.ConnectError, httpx.TimeoutException, httpx.NetworkError)):
        return True

    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS_CODES

    if isinstance(error, (APIStatusError, APIError)):
        body = getattr(error, 'body', None)
        if isinstance(body, dict):
            error_type = (body.get('error') or {}).get('type', '')
            if error_type:
                return error_type in RETRYABLE_ERRORS
        status_code = getattr(error, 'status_code', None)
        if status_code is not None:
            return status_code in RETRYABLE_STATUS_CODES

    return False


def calculate_retry_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Exponential backoff with 0-25% jitter"""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return delay + delay * random.uniform(0, 0.25)


class ModelClient(ABC):
    """Source of one streamed model turn as raw event dicts"""

    @abstractmethod
    def stream_turn(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        system: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        ...


class _RetryingStreamClient(ModelClient):
    """
    Retries retryable failures only before the first event has been
    yielded. Once events have flowed, tool calls may already be dispatched,
    so a replay is never attempted and the failure is fatal.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
    ):
        self.model = model or settings.CLAUDE_MODEL
        self.max_tokens = max_tokens or settings.CLAUDE_MAX_TOKENS
        self.temperature = settings.CLAUDE_TEMPERATURE if temperature is None else temperature
        self.max_retries = settings.CLAUDE_MAX_RETRIES if max_retries is None else max_retries
        self.base_delay = settings.CLAUDE_RETRY_BASE_DELAY if base_delay is None else base_delay
        self.max_delay = settings.CLAUDE_RETRY_MAX_DELAY if max_delay is None else max_delay

    def _request_body(self, messages, tools, system) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "messages": messages,
        }
        if tools:
            body["tools"] = tools
            body["tool_choice"] = {"type": "auto"}
        if system:
            body["system"] = system
        return body

    @abstractmethod
    def _open_stream(self, body: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        ...

    async def stream_turn(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        system: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        body = self._request_body(messages, tools, system)
        logger.info(f"[ModelClient] Streaming turn: model={self.model}, messages={len(messages)}, tools={len(tools)}")

        for attempt in range(self.max_retries + 1):
            has_yielded = False
            try:
                async for event in self._open_stream(body):
                    has_yielded = True
                    yield event
                return
            except FatalModelError:
                raise
            except Exception as e:
                error_type = type(e).__name__
                if not has_yielded and is_retryable_error(e) and attempt < self.max_retries:
                    delay = calculate_retry_delay(attempt, self.base_delay, self.max_delay)
                    logger.warning(
                        f"[ModelClient] Streaming error [{error_type}] (attempt {attempt + 1}/{self.max_retries + 1}), "
                        f"retrying in {delay:.1f}s...",
                        extra={
                            "event_type": "model_stream_retry",
                            "error_type": error_type,
                            "attempt": attempt + 1,
                            "retry_delay": delay
                        }
                    )
                    await asyncio.sleep(delay)
                    continue

                logger.error(
                    f"[ModelClient] Streaming error: {error_type}: {e}",
                    extra={
                        "event_type": "model_stream_error",
                        "error_type": error_type,
                        "has_yielded": has_yielded,
                        "attempt": attempt + 1
                    }
                )
                status_code = getattr(e, "status_code", None)
                if isinstance(e, httpx.HTTPStatusError):
                    status_code = e.response.status_code
                raise FatalModelError(f"{error_type}: {e}", status_code=status_code) from e


class ClaudeStreamClient(_RetryingStreamClient):
    """Anthropic SDK client yielding raw Messages stream events"""

    def __init__(self, client: Optional[AsyncAnthropic] = None, **kwargs):
        super().__init__(**kwargs)
        if client is None:
            client_kwargs: Dict[str, Any] = {"api_key": settings.ANTHROPIC_API_KEY}
            if settings.ANTHROPIC_BASE_URL and settings.ANTHROPIC_BASE_URL.strip():
                client_kwargs["base_url"] = settings.ANTHROPIC_BASE_URL.strip()
                logger.info(f"[ModelClient] Using custom Claude API base URL: {settings.ANTHROPIC_BASE_URL}")
            client_kwargs["timeout"] = httpx.Timeout(
                connect=float(settings.CLAUDE_CONNECT_TIMEOUT),
                read=float(settings.CLAUDE_REQUEST_TIMEOUT),
                write=float(settings.CLAUDE_REQUEST_TIMEOUT),
                pool=float(settings.CLAUDE_REQUEST_TIMEOUT)
            )
            # Retries are handled here, before the first event only
            client_kwargs["max_retries"] = 0
            client = AsyncAnthropic(**client_kwargs)
        self.client = client

    async def _open_stream(self, body: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        stream = await self.client.messages.create(stream=True, **body)
        async for event in stream:
            yield event.model_dump() if hasattr(event, "model_dump") else dict(event)


class SSEStreamClient(_RetryingStreamClient):
    """Raw Server-Sent Events over httpx against a Messages-compatible endpoint"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        **kwargs
    ):
        super().__init__(**kwargs)
        self.base_url = (base_url or settings.ANTHROPIC_BASE_URL or "https://api.anthropic.com").rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        self._http_client = http_client

    def _headers(self) -> Dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
            "accept": "text/event-stream",
        }

    async def _open_stream(self, body: Dict[str, Any]) -> AsyncIterator[Dict[str, Any]]:
        client = self._http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=float(settings.CLAUDE_CONNECT_TIMEOUT),
                read=float(settings.CLAUDE_REQUEST_TIMEOUT),
                write=float(settings.CLAUDE_REQUEST_TIMEOUT),
                pool=float(settings.CLAUDE_REQUEST_TIMEOUT)
            )
        )
        try:
            async with client.stream(
                "POST",
                f"{self.base_url}/v1/messages",
                json={**body, "stream": True},
                headers=self._headers(),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    response.raise_for_status()
                async for event in iter_sse_events(response.aiter_text()):
                    yield event
        finally:
            if self._http_client is None:
                await client.aclose()


def get_model_client() -> ModelClient:
    """Default model client from settings"""
    return ClaudeStreamClient()
