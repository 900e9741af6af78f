"""Base interface for email delivery providers."""

from __future__ import annotations

import abc
from typing import Dict, Optional

from pydantic import BaseModel, Field


class OutgoingEmail(BaseModel):
    """A fully personalized message ready for delivery."""

    to: str
    from_email: str
    from_name: Optional[str] = None
    subject: str
    html: str = ""
    text: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)


class SendReceipt(BaseModel):
    message_id: str


class EmailProvider(metaclass=abc.ABCMeta):
    """Abstract base for email providers.

    ``send`` may raise any exception; the worker treats it as a transient
    failure and retries the task.
    """

    async def connect(self) -> None:
        """Open provider resources (no-op by default)."""
        pass

    async def disconnect(self) -> None:
        """Release provider resources (no-op by default)."""
        pass

    @abc.abstractmethod
    async def send(self, message: OutgoingEmail) -> SendReceipt:
        """Deliver ``message`` and return the provider's message id."""
        raise NotImplementedError
