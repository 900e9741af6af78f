"""In-process email providers for tests and local runs."""

from __future__ import annotations

import logging
import uuid
from typing import List

from .base import EmailProvider, OutgoingEmail, SendReceipt

logger = logging.getLogger(__name__)


class InMemoryEmailProvider(EmailProvider):
    """Collects sent messages in a list instead of delivering them."""

    def __init__(self) -> None:
        self.sent: List[OutgoingEmail] = []

    async def send(self, message: OutgoingEmail) -> SendReceipt:
        self.sent.append(message)
        return SendReceipt(message_id=f"mem-{uuid.uuid4().hex}")


class LoggingEmailProvider(EmailProvider):
    """Logs each message; the default when no real provider is configured."""

    async def send(self, message: OutgoingEmail) -> SendReceipt:
        message_id = f"log-{uuid.uuid4().hex}"
        logger.info(
            f"Email {message_id} to={message.to} from={message.from_email} subject={message.subject!r}"
        )
        return SendReceipt(message_id=message_id)
