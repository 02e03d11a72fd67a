"""Tests for NotificationDispatcher."""

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from nano_dr.config import MonitoringConfig
from nano_dr.models import BackupStatus, BackupType
from nano_dr.notifications import NotificationDispatcher

from tests.utils import make_metadata


def make_http_client(post_side_effect=None):
    client = MagicMock()
    response = MagicMock()
    response.raise_for_status = MagicMock()
    client.post = AsyncMock(return_value=response, side_effect=post_side_effect)
    client.__aenter__ = AsyncMock(return_value=client)
    client.__aexit__ = AsyncMock(return_value=False)
    return client


@pytest.mark.asyncio
async def test_disabled_dispatcher_sends_nothing():
    client = make_http_client()
    dispatcher = NotificationDispatcher(
        MonitoringConfig(enabled=False, webhook_url="https://hooks.example.com/b"),
        http_client_factory=lambda: client,
    )

    assert dispatcher.alert("disk full") is None
    await dispatcher.drain()
    client.post.assert_not_called()


@pytest.mark.asyncio
async def test_success_event_sent_to_webhook():
    client = make_http_client()
    dispatcher = NotificationDispatcher(
        MonitoringConfig(webhook_url="https://hooks.example.com/b"),
        http_client_factory=lambda: client,
    )
    metadata = make_metadata("backup_1", size=2048)

    task = dispatcher.backup_succeeded(metadata)
    await dispatcher.drain()

    assert task.done()
    url = client.post.call_args.args[0]
    payload = client.post.call_args.kwargs["json"]
    assert url == "https://hooks.example.com/b"
    assert payload["kind"] == "success"
    assert payload["backup_id"] == "backup_1"
    assert payload["backup_type"] == "full"
    assert payload["size"] == 2048
    assert "2.00 KB" in payload["message"]


@pytest.mark.asyncio
async def test_failure_event_sent_to_telegram():
    client = make_http_client()
    dispatcher = NotificationDispatcher(
        MonitoringConfig(telegram_bot_token="TOKEN", telegram_chat_id="42"),
        http_client_factory=lambda: client,
    )

    dispatcher.backup_failed("backup_2", BackupType.INCREMENTAL, "pg_dump exited 1")
    await dispatcher.drain()

    url = client.post.call_args.args[0]
    payload = client.post.call_args.kwargs["json"]
    assert url == "https://api.telegram.org/botTOKEN/sendMessage"
    assert payload["chat_id"] == "42"
    assert "pg_dump exited 1" in payload["text"]


@pytest.mark.asyncio
async def test_email_channel():
    dispatcher = NotificationDispatcher(
        MonitoringConfig(email="ops@example.com", smtp_host="smtp.example.com", smtp_port=2525),
    )

    with patch("nano_dr.notifications.aiosmtplib.send", new_callable=AsyncMock) as send:
        dispatcher.alert("Last full backup is 30.0h old")
        await dispatcher.drain()

    message = send.call_args.args[0]
    assert message["To"] == "ops@example.com"
    assert "alert" in message["Subject"]
    assert send.call_args.kwargs["hostname"] == "smtp.example.com"
    assert send.call_args.kwargs["port"] == 2525


@pytest.mark.asyncio
async def test_channel_failure_does_not_propagate():
    client = make_http_client(post_side_effect=RuntimeError("webhook down"))
    dispatcher = NotificationDispatcher(
        MonitoringConfig(webhook_url="https://hooks.example.com/b", email="ops@example.com"),
        http_client_factory=lambda: client,
    )

    with patch("nano_dr.notifications.aiosmtplib.send", new_callable=AsyncMock) as send:
        task = dispatcher.backup_failed("backup_3", BackupType.FULL, "boom")
        await dispatcher.drain()

    assert task.exception() is None
    send.assert_awaited_once()


@pytest.mark.asyncio
async def test_one_event_per_outcome():
    client = make_http_client()
    dispatcher = NotificationDispatcher(
        MonitoringConfig(webhook_url="https://hooks.example.com/b"),
        http_client_factory=lambda: client,
    )
    metadata = make_metadata("backup_4", status=BackupStatus.SUCCESS)

    dispatcher.backup_succeeded(metadata)
    dispatcher.backup_failed("backup_5", BackupType.FULL, "disk full")
    await dispatcher.drain()

    kinds = [c.kwargs["json"]["kind"] for c in client.post.call_args_list]
    assert sorted(kinds) == ["failed", "success"]
