import asyncio
import smtplib
from email.message import EmailMessage
from typing import Optional, Sequence

import httpx

from common.config import SmtpSettings
from common.errors import TransportError
from common.logger import get_logger

CHANNEL_EMAIL = "email"
CHANNEL_SLACK = "slack"
CHANNEL_WEBHOOK = "webhook"


class EmailTransport:
    """SMTP delivery; ``body`` is sent as HTML with a plain-text fallback."""

    channel = CHANNEL_EMAIL

    def __init__(self, settings: SmtpSettings, timeout: float = 30.0) -> None:
        self._logger = get_logger(__name__)
        self._settings = settings
        self._timeout = timeout

    def _build(self, recipients: Sequence[str], subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._settings.sender
        message["To"] = ", ".join(recipients)
        message["Subject"] = subject
        message.set_content("This message requires an HTML capable mail client.")
        message.add_alternative(body, subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._settings.host, self._settings.port, timeout=self._timeout) as smtp:
            if self._settings.starttls:
                smtp.starttls()
            if self._settings.configured:
                smtp.login(self._settings.user, self._settings.password)
            smtp.send_message(message)

    async def send(self, recipients: Sequence[str], subject: str, body: str) -> bool:
        if not self._settings.configured:
            self._logger.warning("SMTP credentials not set, email to %d recipients not sent",
                                 len(recipients))
            return False

        message = self._build(recipients, subject, body)
        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError) as e:
            raise TransportError(f"Email delivery failed: {e}") from e

        self._logger.info("Email sent to %s", ", ".join(recipients))
        return True


class _HttpTransport:
    def __init__(self, client: Optional[httpx.AsyncClient] = None, timeout: float = 10.0) -> None:
        self._logger = get_logger(__name__)
        self._client = client
        self._owns_client = client is None
        self._timeout = timeout

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, url: str, payload: dict) -> None:
        try:
            response = await self._http().post(url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise TransportError(f"{self.channel} delivery to {url} failed: {e}") from e

    async def send(self, recipients: Sequence[str], subject: str, body: str) -> bool:
        for url in recipients:
            await self._post(url, self._payload(subject, body))
        self._logger.info("%s notification delivered to %d endpoint(s)", self.channel, len(recipients))
        return True


class SlackTransport(_HttpTransport):
    """Posts to Slack incoming webhooks; each recipient is a webhook URL."""

    channel = CHANNEL_SLACK

    @staticmethod
    def _payload(subject: str, body: str) -> dict:
        return {"text": f"*{subject}*\n{body}"}


class WebhookTransport(_HttpTransport):
    channel = CHANNEL_WEBHOOK

    @staticmethod
    def _payload(subject: str, body: str) -> dict:
        return {"subject": subject, "text": body}
