"""HTTP webhook caller built on httpx."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from ..errors import TransientDependencyError, WebhookError

logger = logging.getLogger(__name__)


class HttpWebhookCaller:
    """POST JSON payloads to webhook endpoints used by Action steps."""

    def __init__(self, timeout: float = 10.0, client: httpx.AsyncClient | None = None):
        self._timeout = timeout
        self._client = client

    async def post(self, url: str, payload: dict[str, Any]) -> None:
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientDependencyError(f"Webhook {url} unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise TransientDependencyError(
                f"Webhook {url} unavailable: answered {response.status_code}"
            )
        if response.is_error:
            raise WebhookError(f"Webhook failed: {url} answered {response.status_code}")
        logger.info(f"Webhook called successfully: {url}")
