from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from ideatank.errors import AIError

logger = logging.getLogger(__name__)


class ChatCompletionClient:
    """Minimal async client for an OpenAI-compatible ``/chat/completions`` API."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                transport=self._transport,
                headers={"Authorization": f"Bearer {self._api_key}"},
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def complete(
        self,
        *,
        model: str,
        messages: List[Dict[str, str]],
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        body: Dict[str, Any] = {"model": model, "messages": messages}
        if temperature is not None:
            body["temperature"] = temperature
        if max_tokens is not None:
            body["max_tokens"] = max_tokens

        logger.debug("chat completion request model=%s messages=%d", model, len(messages))
        try:
            response = await self._get_client().post("/chat/completions", json=body)
        except httpx.HTTPError as exc:
            raise AIError("provider", f"request to {model} failed: {exc}") from exc

        if response.status_code >= 400:
            detail = response.text[:500]
            raise AIError(
                "provider",
                f"{model} responded with {response.status_code}: {detail}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
            content = payload["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise AIError("provider", f"unexpected response shape from {model}") from exc
        return content or ""
