"""Best-effort alerting for backup outcomes and health problems."""

import asyncio
from email.message import EmailMessage
from typing import Any, Callable, Optional, Set

import aiosmtplib
import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from ._utils import format_size, logger, utcnow
from .config import MonitoringConfig
from .models import BackupMetadata, BackupType, NotificationEvent, NotificationKind


class NotificationDispatcher:
    """Emit one structured event per outcome to every configured channel.

    Delivery runs in background tasks; a failing channel is logged and
    never propagates to the backup operation that triggered it.
    """

    def __init__(
        self,
        config: MonitoringConfig,
        http_client_factory: Optional[Callable[[], Any]] = None,
    ):
        self.config = config
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=self.config.request_timeout)
        )
        self._pending: Set[asyncio.Task] = set()

    def notify(self, event: NotificationEvent) -> Optional[asyncio.Task]:
        """Schedule delivery of `event` and return immediately."""
        if not self.config.enabled:
            return None

        logger.info(f"Backup notification queued: {event.kind.value} - {event.message}")
        task = asyncio.create_task(self._deliver(event))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    def backup_succeeded(self, metadata: BackupMetadata) -> Optional[asyncio.Task]:
        return self.notify(NotificationEvent(
            kind=NotificationKind.SUCCESS,
            backup_id=metadata.id,
            backup_type=metadata.type,
            size=metadata.size,
            message=f"Backup {metadata.id} completed successfully ({format_size(metadata.size)})",
            created_at=utcnow(),
        ))

    def backup_failed(self, backup_id: str, backup_type: BackupType, error: str) -> Optional[asyncio.Task]:
        return self.notify(NotificationEvent(
            kind=NotificationKind.FAILED,
            backup_id=backup_id,
            backup_type=backup_type,
            error=error,
            message=f"Backup {backup_id} failed: {error}",
            created_at=utcnow(),
        ))

    def alert(self, message: str) -> Optional[asyncio.Task]:
        return self.notify(NotificationEvent(
            kind=NotificationKind.ALERT,
            message=message,
            created_at=utcnow(),
        ))

    async def drain(self) -> None:
        """Wait for every queued delivery to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def _deliver(self, event: NotificationEvent) -> None:
        channels = []
        if self.config.webhook_url:
            channels.append(("webhook", self._send_webhook(event)))
        if self.config.telegram_bot_token and self.config.telegram_chat_id:
            channels.append(("telegram", self._send_telegram(event)))
        if self.config.email:
            channels.append(("email", self._send_email(event)))

        results = await asyncio.gather(*(c for _, c in channels), return_exceptions=True)
        for (name, _), result in zip(channels, results):
            if isinstance(result, Exception):
                logger.warning(f"Failed to deliver {event.kind.value} notification via {name}: {result}")

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _post(self, url: str, payload: dict) -> None:
        async with self._http_client_factory() as client:
            response = await client.post(url, json=payload)
            response.raise_for_status()

    async def _send_webhook(self, event: NotificationEvent) -> None:
        await self._post(self.config.webhook_url, event.model_dump(mode="json"))
        logger.debug(f"Webhook notification sent for {event.backup_id or 'alert'}")

    async def _send_telegram(self, event: NotificationEvent) -> None:
        url = f"https://api.telegram.org/bot{self.config.telegram_bot_token}/sendMessage"
        await self._post(url, {"chat_id": self.config.telegram_chat_id, "text": event.message})
        logger.debug("Telegram notification sent")

    async def _send_email(self, event: NotificationEvent) -> None:
        message = EmailMessage()
        message["From"] = self.config.smtp_sender
        message["To"] = self.config.email
        message["Subject"] = f"[backup] {event.kind.value}: {event.backup_id or 'health alert'}"
        message.set_content(event.model_dump_json(indent=2))

        await aiosmtplib.send(
            message,
            hostname=self.config.smtp_host,
            port=self.config.smtp_port,
            username=self.config.smtp_username,
            password=self.config.smtp_password,
            use_tls=self.config.smtp_use_tls,
        )
        logger.debug(f"Email notification sent to {self.config.email}")
