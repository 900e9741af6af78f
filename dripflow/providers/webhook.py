"""Outbound webhook calls for action steps."""

from __future__ import annotations

from typing import Any, Dict, Optional

import httpx


class WebhookCaller:
    """POSTs JSON bodies to external endpoints.

    Non-2xx responses and network errors propagate as ``httpx.HTTPError`` so
    the worker can retry the task.
    """

    def __init__(
        self, timeout: float = 10.0, client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._timeout = timeout
        self._client = client

    async def post(
        self, url: str, json: Dict[str, Any], headers: Optional[Dict[str, str]] = None
    ) -> int:
        if self._client is not None:
            response = await self._client.post(url, json=json, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=json, headers=headers)
        response.raise_for_status()
        return response.status_code
