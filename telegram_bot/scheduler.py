"""
This module drains the notification outbox and delivers it through Telegram.
"""

import asyncio
import logging

from telegram import Bot
from telegram.ext import Application

from pickup_ledger.config import (NOTIFICATION_CHECK_INTERVAL_SECONDS,
                                  NOTIFICATION_CHUNK_SIZE)
from pickup_ledger.facade import PickupPlatformFacade

logger = logging.getLogger(__name__)


async def send_notification(bot: Bot, chat_id: int, message: str) -> None:
    """Sends a single notification message to a user."""
    await bot.send_message(chat_id=chat_id, text=message)


async def check_and_send_notifications(
    facade: PickupPlatformFacade, bot: Bot, chunk_size: int = NOTIFICATION_CHUNK_SIZE
) -> None:
    """
    Fetches pending notifications from the facade and sends them.
    """
    logger.info("Checking for pending notifications...")
    notification_tasks = facade.get_due_notifications()

    if not notification_tasks:
        logger.info("No notifications are pending.")
        return

    logger.info(f"Found {len(notification_tasks)} notifications to send.")

    for i in range(0, len(notification_tasks), chunk_size):
        chunk = notification_tasks[i : i + chunk_size]

        results = await asyncio.gather(
            *(send_notification(bot, task["chat_id"], task["message"]) for task in chunk),
            return_exceptions=True,
        )

        for task, result in zip(chunk, results):
            if not isinstance(result, Exception):
                facade.update_notification_log(task["log_id"], "success")
                logger.info(
                    f"Sent update for request {task['request_id']} to chat_id {task['chat_id']}."
                )
            else:
                error_message = str(result)
                facade.update_notification_log(task["log_id"], "failure", error_message)
                logger.error(
                    f"Failed to send notification to chat_id {task['chat_id']}: {error_message}"
                )

        # Pause between chunks to stay under Telegram's broadcast limits
        if i + chunk_size < len(notification_tasks):
            await asyncio.sleep(1)


async def scheduler(
    facade: PickupPlatformFacade,
    application: Application,
    interval: int = NOTIFICATION_CHECK_INTERVAL_SECONDS,
) -> None:
    """
    The main scheduler loop that periodically sends queued notifications.
    """
    bot = application.bot
    logger.info("Notification scheduler started.")
    while True:
        try:
            await check_and_send_notifications(facade, bot)
        except Exception as e:
            logger.exception(
                f"An error occurred in the notification scheduler loop: {e}"
            )
        await asyncio.sleep(interval)
