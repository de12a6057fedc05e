"""Email delivery over a Resend-compatible HTTP API."""

import logging
from typing import Optional

import httpx

from automation_engine.collaborators.base import (
    EmailSender,
    raise_for_response,
    wrap_transport_error,
)
from automation_engine.config import Settings

logger = logging.getLogger(__name__)


class ResendEmailSender(EmailSender):
    """
    Sends email through the Resend REST API.

    The idempotency key is forwarded as the ``Idempotency-Key`` header so a
    replayed send after a crash is de-duplicated by the provider.
    """

    SERVICE = "email"

    def __init__(
        self,
        api_url: str,
        api_key: str,
        sender: str,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize sender.

        Args:
            api_url: Send endpoint
            api_key: Bearer token
            sender: From address
            timeout: Request timeout in seconds
            client: Optional pre-built client (tests inject a mock transport)
        """
        self._api_url = api_url
        self._api_key = api_key
        self._sender = sender
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def send(self, to: str, subject: str, html: str, idempotency_key: str) -> None:
        payload = {
            "from": self._sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        headers = {**self.headers, "Idempotency-Key": idempotency_key}

        try:
            response = await self._client.post(self._api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise wrap_transport_error(e, self.SERVICE) from e

        raise_for_response(response, self.SERVICE)
        logger.info(f"Email sent to {to} (key={idempotency_key})")

    async def close(self) -> None:
        await self._client.aclose()


class LoggingEmailSender(EmailSender):
    """Used when delivery is not configured; emails are only logged."""

    def __init__(self):
        self.sent: list[dict[str, str]] = []

    async def send(self, to: str, subject: str, html: str, idempotency_key: str) -> None:
        self.sent.append({
            "to": to,
            "subject": subject,
            "html": html,
            "idempotency_key": idempotency_key,
        })
        logger.info(f"Email delivery disabled; would send '{subject}' to {to} (key={idempotency_key})")

    async def close(self) -> None:
        pass


def build_email_sender(settings: Settings) -> EmailSender:
    """Pick the real sender when an API key and sender address are configured."""
    email = settings.email
    if not email.enabled:
        logger.warning("EMAIL_API_KEY or EMAIL_SENDER not set; email delivery is disabled")
        return LoggingEmailSender()
    return ResendEmailSender(
        api_url=email.api_url,
        api_key=email.api_key,
        sender=email.sender,
        timeout=email.timeout,
    )
