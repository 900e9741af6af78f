"""Mailgun-based email provider.

Sends email through the Mailgun HTTP API. Idempotency keys supplied in the
message headers are forwarded as custom ``h:`` headers so downstream
systems can deduplicate retried sends.
"""

from __future__ import annotations

from typing import Optional

import httpx

from .base import EmailProvider, OutgoingEmail, SendReceipt


class MailgunEmailProvider(EmailProvider):
    """Mailgun implementation of the ``EmailProvider`` interface."""

    def __init__(
        self,
        api_key: Optional[str],
        domain: Optional[str],
        base_url: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        if not api_key or not domain:
            raise ValueError("Mailgun api_key and domain must be set")
        self._api_key = api_key
        self._domain = domain
        self._base_url = base_url or f"https://api.mailgun.net/v3/{domain}"
        self._timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    async def connect(self) -> None:
        self._client = httpx.AsyncClient(
            auth=("api", self._api_key), timeout=self._timeout
        )

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, message: OutgoingEmail) -> SendReceipt:
        if not self._client:
            await self.connect()

        sender = (
            f"{message.from_name} <{message.from_email}>"
            if message.from_name
            else message.from_email
        )
        data = {
            "from": sender,
            "to": message.to,
            "subject": message.subject,
            "html": message.html,
        }
        if message.text:
            data["text"] = message.text
        for name, value in message.headers.items():
            data[f"h:{name}"] = value

        response = await self._client.post(f"{self._base_url}/messages", data=data)
        response.raise_for_status()
        return SendReceipt(message_id=response.json().get("id", ""))
