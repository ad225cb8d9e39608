"""
Notification dispatch sink: email, webhook and in-app dashboard messages.

Delivery is fire-and-forget. Failures are logged, never raised to callers.
"""

import asyncio
import smtplib
from abc import ABC, abstractmethod
from email.message import EmailMessage
from typing import Any

import httpx
import structlog

from .events import DashboardUpdated, EventBus
from .models import NotificationConfig

logger = structlog.get_logger(__name__)


class NotificationSink(ABC):
    """Abstract sink accepting the three notification shapes"""

    @abstractmethod
    async def send_email(self, recipients: list[str], subject: str, body: str) -> None:
        pass

    @abstractmethod
    async def send_webhook(self, url: str, payload: dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def send_dashboard(
        self, recipients: list[str], title: str, body: str, severity: str
    ) -> None:
        pass


class DispatchingNotificationSink(NotificationSink):
    """Sends webhooks with httpx, email over SMTP and dashboard messages on the event bus"""

    def __init__(
        self,
        config: NotificationConfig,
        bus: EventBus,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.bus = bus
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.webhook_timeout_seconds)
        return self._client

    async def send_email(self, recipients: list[str], subject: str, body: str) -> None:
        if not recipients:
            return
        if not self.config.smtp_host:
            logger.info("SMTP not configured, email skipped", recipients=recipients, subject=subject)
            return
        try:
            await asyncio.to_thread(self._send_smtp, recipients, subject, body)
            logger.info("Email sent", recipients=recipients, subject=subject)
        except Exception as e:
            logger.error("Email delivery failed", recipients=recipients, error=str(e))

    def _send_smtp(self, recipients: list[str], subject: str, body: str) -> None:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = self.config.smtp_from
        message["To"] = ", ".join(recipients)
        message.set_content(body)

        with smtplib.SMTP(self.config.smtp_host, self.config.smtp_port, timeout=10) as server:
            server.ehlo()
            if self.config.smtp_user:
                server.starttls()
                server.login(self.config.smtp_user, self.config.smtp_password or "")
            server.send_message(message)

    async def send_webhook(self, url: str, payload: dict[str, Any]) -> None:
        try:
            response = await self.client.post(url, json=payload)
            if response.status_code >= 400:
                logger.warning("Webhook rejected", url=url, status_code=response.status_code)
            else:
                logger.debug("Webhook delivered", url=url, status_code=response.status_code)
        except httpx.HTTPError as e:
            logger.error("Webhook delivery failed", url=url, error=str(e))

    async def send_dashboard(
        self, recipients: list[str], title: str, body: str, severity: str
    ) -> None:
        await self.bus.publish(
            DashboardUpdated(
                recipients=tuple(recipients), title=title, body=body, severity=severity
            )
        )

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
