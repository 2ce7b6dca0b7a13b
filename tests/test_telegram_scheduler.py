"""
Tests for the Telegram notification dispatcher.
"""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from telegram_bot.scheduler import check_and_send_notifications


@pytest.fixture
def mock_facade():
    """Returns a mock PickupPlatformFacade."""
    facade = MagicMock()
    facade.get_due_notifications.return_value = []
    facade.update_notification_log = MagicMock()
    return facade


@pytest.fixture
def mock_bot():
    """Returns a mock Telegram bot."""
    bot = MagicMock()
    bot.send_message = AsyncMock()
    return bot


def _task(log_id, chat_id):
    return {
        "log_id": log_id,
        "user_id": 7,
        "request_id": 100 + log_id,
        "chat_id": chat_id,
        "message": f"Update {log_id}",
    }


@pytest.mark.asyncio
async def test_check_and_send_notifications_no_notifications(mock_facade, mock_bot):
    """
    Tests that nothing is sent when the outbox is empty.
    """
    await check_and_send_notifications(mock_facade, mock_bot)
    mock_facade.get_due_notifications.assert_called_once()
    mock_bot.send_message.assert_not_called()


@pytest.mark.asyncio
async def test_check_and_send_notifications_sends_successfully(mock_facade, mock_bot):
    """
    Tests that every pending notification is sent and marked as delivered.
    """
    mock_facade.get_due_notifications.return_value = [_task(1, 123), _task(2, 456)]

    await check_and_send_notifications(mock_facade, mock_bot)

    assert mock_bot.send_message.call_count == 2
    mock_bot.send_message.assert_any_call(chat_id=456, text="Update 2")
    mock_facade.update_notification_log.assert_any_call(1, "success")
    mock_facade.update_notification_log.assert_any_call(2, "success")


@pytest.mark.asyncio
async def test_check_and_send_notifications_handles_failure(mock_facade, mock_bot):
    """
    Tests that a failed send is recorded against its own log entry.
    """
    mock_facade.get_due_notifications.return_value = [_task(1, 123)]
    mock_bot.send_message.side_effect = Exception("Test error")

    await check_and_send_notifications(mock_facade, mock_bot)

    assert mock_bot.send_message.call_count == 1
    mock_facade.update_notification_log.assert_called_with(1, "failure", "Test error")


@pytest.mark.asyncio
async def test_check_and_send_notifications_sends_in_chunks(mock_facade, mock_bot):
    """
    Tests that large batches are split and paced between chunks.
    """
    mock_facade.get_due_notifications.return_value = [_task(n, n) for n in range(1, 6)]

    with patch("telegram_bot.scheduler.asyncio.sleep", new=AsyncMock()) as sleep:
        await check_and_send_notifications(mock_facade, mock_bot, chunk_size=2)

    assert mock_bot.send_message.call_count == 5
    assert sleep.await_count == 2
    assert mock_facade.update_notification_log.call_count == 5
