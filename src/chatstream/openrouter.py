"""OpenRouter streaming client utilities."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator

import httpx
from fastapi import status

from .chat.cancellation import CancellationToken
from .config import Settings
from .schemas.chat import ChatCompletionRequest

logger = logging.getLogger(__name__)

_RETRYABLE_STATUSES = {
    status.HTTP_408_REQUEST_TIMEOUT,
    status.HTTP_429_TOO_MANY_REQUESTS,
    524,
    529,
}


class OpenRouterError(Exception):
    """Wrap transport or API failures when communicating with OpenRouter."""

    def __init__(self, status_code: int, detail: Any):
        super().__init__(str(detail))
        self.status_code = status_code
        self.detail = detail

    @property
    def retryable(self) -> bool:
        """True for rate limits, timeouts, and upstream server failures."""

        return self.status_code in _RETRYABLE_STATUSES or self.status_code >= 500


class OpenRouterClient:
    """Client responsible for streaming chat completions from OpenRouter."""

    _client_lock: asyncio.Lock = asyncio.Lock()
    _client_pool: dict[tuple[str, float], httpx.AsyncClient] = {}

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.AsyncClient | None = None,
    ):
        self._settings = settings
        self._http_client = http_client

    def _client_key(self) -> tuple[str, float]:
        return (self._base_url, float(self._settings.request_timeout))

    async def get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client

        key = self._client_key()
        client = self.__class__._client_pool.get(key)
        if client is not None:
            return client

        async with self.__class__._client_lock:
            client = self.__class__._client_pool.get(key)
            if client is None:
                timeout = httpx.Timeout(self._settings.request_timeout, connect=10.0)
                limits = httpx.Limits(
                    max_connections=50,
                    max_keepalive_connections=20,
                )
                client = httpx.AsyncClient(
                    timeout=timeout,
                    limits=limits,
                    http2=True,
                )
                self.__class__._client_pool[key] = client
        return client

    @property
    def _headers(self) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._settings.openrouter_api_key.get_secret_value()}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream",
        }
        if self._settings.openrouter_app_url:
            referer = str(self._settings.openrouter_app_url)
            headers["HTTP-Referer"] = referer
            headers["Referer"] = referer
        if self._settings.openrouter_app_name:
            headers["X-Title"] = self._settings.openrouter_app_name
        return headers

    @property
    def _base_url(self) -> str:
        """Return the OpenRouter API base URL without a trailing slash."""

        return str(self._settings.openrouter_base_url).rstrip("/")

    async def stream_lines(
        self,
        request: ChatCompletionRequest,
        *,
        token: CancellationToken | None = None,
    ) -> AsyncGenerator[str, None]:
        """Open the streaming completion and yield raw response lines.

        The cancellation token is checked between lines; once it is set the
        generator returns and the upstream response is closed.
        """

        payload = request.to_openrouter_payload()
        url = f"{self._base_url}/chat/completions"

        client = await self.get_http_client()
        try:
            async with client.stream(
                "POST",
                url,
                headers=self._headers,
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    detail = self._extract_error_detail(
                        body, self._settings.error_snippet_chars
                    )
                    logger.warning(
                        "OpenRouter returned %s for model=%s: %s",
                        response.status_code,
                        request.model,
                        detail,
                    )
                    raise OpenRouterError(response.status_code, detail)

                routing_headers = self._extract_routing_headers(response.headers)
                if routing_headers:
                    logger.debug("OpenRouter routing headers: %s", routing_headers)

                logger.debug(
                    "Streaming completion model=%s messages=%d modalities=%s",
                    request.model,
                    len(request.messages),
                    request.modalities,
                )
                async for line in response.aiter_lines():
                    if token is not None and token.cancelled:
                        logger.debug("Stream cancelled; closing upstream response")
                        return
                    yield line
        except httpx.HTTPError as exc:
            raise OpenRouterError(status.HTTP_502_BAD_GATEWAY, str(exc)) from exc

    async def aclose(self) -> None:
        await self.__class__.aclose_shared()

    @classmethod
    async def aclose_shared(cls) -> None:
        async with cls._client_lock:
            clients = list(cls._client_pool.values())
            cls._client_pool.clear()
        for client in clients:
            try:
                await client.aclose()
            except Exception:  # pragma: no cover - best effort cleanup
                pass

    def _extract_routing_headers(self, headers: httpx.Headers) -> dict[str, str]:
        """Return OpenRouter-specific routing headers for debugging."""

        interesting: dict[str, str] = {}
        for key, value in headers.items():
            normalized = key.lower()
            if normalized.startswith("openrouter-") or normalized in {
                "x-request-id",
                "via",
            }:
                interesting[key] = value
        return interesting

    @staticmethod
    def _extract_error_detail(raw: bytes, limit: int = 500) -> Any:
        if not raw:
            return "OpenRouter returned an empty error response."
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError:
            text = raw.decode("utf-8", errors="ignore")
        try:
            payload = json.loads(text)
        except json.JSONDecodeError:
            return _truncate(text, limit)
        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict):
                return error
            if isinstance(error, str):
                return _truncate(error, limit)
        return _truncate(text, limit)


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


__all__ = ["OpenRouterClient", "OpenRouterError"]
