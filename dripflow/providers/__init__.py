"""Email provider factory and webhook caller."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DripflowConfig, load_config
from .base import EmailProvider, OutgoingEmail, SendReceipt
from .inmemory import InMemoryEmailProvider, LoggingEmailProvider
from .webhook import WebhookCaller


def get_email_provider(
    backend: Optional[str] = None, config: Optional[DripflowConfig] = None
) -> EmailProvider:
    """Factory function to get the configured email provider."""

    config = config or load_config()
    backend = (
        backend
        or os.getenv("DRIPFLOW_EMAIL_PROVIDER")
        or config.email.provider
    ).lower()

    if backend == "inmemory":
        return InMemoryEmailProvider()
    elif backend == "logging":
        return LoggingEmailProvider()
    elif backend == "mailgun":
        from .mailgun import MailgunEmailProvider

        mailgun = config.email.mailgun
        return MailgunEmailProvider(
            api_key=mailgun.api_key,
            domain=mailgun.domain,
            base_url=mailgun.base_url,
        )
    else:
        raise ValueError(f"Unsupported email provider: {backend}")


__all__ = [
    "EmailProvider",
    "InMemoryEmailProvider",
    "LoggingEmailProvider",
    "OutgoingEmail",
    "SendReceipt",
    "WebhookCaller",
    "get_email_provider",
]
