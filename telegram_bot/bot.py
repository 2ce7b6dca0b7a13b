"""
This module contains the Telegram bot that lets citizens and collectors
follow their pickups.
"""

import asyncio
import logging
from datetime import datetime

from telegram import Update
from telegram.ext import (AIORateLimiter, Application, CommandHandler,
                          ContextTypes)

from pickup_ledger.config import (TELEGRAM_BOT_TOKEN,
                                  TELEGRAM_RATE_LIMIT_GROUP,
                                  TELEGRAM_RATE_LIMIT_MAX_RETRIES,
                                  TELEGRAM_RATE_LIMIT_OVERALL)
from pickup_ledger.exceptions import PickupError
from pickup_ledger.facade import PickupPlatformFacade
from pickup_ledger.models import Role

from .context import FACADE_KEY, CustomContext
from .scheduler import scheduler

logger = logging.getLogger(__name__)

Context = CustomContext


async def start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Sends a welcome message."""
    await update.message.reply_text(
        "Hi! I'm the EcoPickup bot. I'll tell you whenever one of your pickups changes.\n"
        "Ask for a link code in the EcoPickup app, send /link <code> to connect "
        "this chat to your account, then /stats to see your progress."
    )


async def link(update: Update, context: Context) -> None:
    """Redeems a one-time link code so status updates are delivered to this chat."""
    if len(context.args) != 1:
        await update.message.reply_text("Usage: /link <code>")
        return

    chat_id = update.message.chat_id
    try:
        account = context.facade.redeem_link_code(context.args[0], chat_id)
    except PickupError as e:
        await update.message.reply_text(e.user_message)
        return
    except Exception as e:
        logger.error(f"Unexpected error in link: {e}")
        await update.message.reply_text("An unexpected error occurred. Please try again later.")
        return

    await update.message.reply_text(
        f"This chat is now linked to {account.name}'s account. You'll get pickup updates here."
    )


def _format_user_stats(stats: dict) -> str:
    overview = stats["overview"]
    lines = [
        f"<b>{stats['user']['name']}</b>",
        f"♻️ Pickups completed: {overview['total_pickups']}",
        f"⏳ Pending: {overview['pending_pickups']}, in progress: {overview['active_pickups']}",
        f"⚖️ Waste recycled: {overview['waste_collected_kg']:g} kg",
        f"💰 Earnings: ₹{overview['total_earnings']:g}",
        f"🪙 GreenCoins: {overview['green_coins']}",
        f"🌱 EcoScore: {overview['eco_score']}",
        f"🌍 CO₂ saved: {overview['co2_saved_kg']:g} kg",
    ]
    if overview["next_pickup"]:
        lines.append(f"📅 Next pickup: {overview['next_pickup']}")
    return "\n".join(lines)


def _format_collector_stats(stats: dict) -> str:
    performance = stats["performance"]
    return "\n".join(
        [
            f"<b>{stats['collector']['name']}</b>",
            f"🚛 Pickups completed: {performance['total_pickups']}",
            f"📋 Assigned: {performance['assigned_pickups']}",
            f"⚖️ Waste collected: {performance['waste_collected_kg']:g} kg",
            f"💰 Earnings: ₹{performance['total_earnings']:g}",
            f"✅ Completion rate: {performance['completion_rate']}%",
        ]
    )


async def stats(update: Update, context: Context) -> None:
    """Shows the statistics of the account linked to this chat."""
    chat_id = update.message.chat_id
    try:
        account = context.facade.find_account_by_telegram_chat(chat_id)
        if account is None:
            await update.message.reply_text(
                "This chat isn't linked to an account yet. Send /link <code> first."
            )
            return
        if account.role is Role.COLLECTOR:
            message = _format_collector_stats(
                context.facade.get_collector_stats(account.id, account.id)
            )
        else:
            message = _format_user_stats(
                context.facade.get_user_stats(account.id, account.id)
            )
    except PickupError as e:
        await update.message.reply_text(e.user_message)
        return
    except Exception as e:
        logger.error(f"Unexpected error in stats: {e}")
        await update.message.reply_text("An unexpected error occurred. Please try again later.")
        return

    await update.message.reply_text(message, parse_mode="HTML")


def setup_handlers(application: Application) -> None:
    """Registers the command handlers."""
    application.add_handler(CommandHandler("start", start))
    application.add_handler(CommandHandler("link", link))
    application.add_handler(CommandHandler("stats", stats))


def record_bot_start_time(facade_instance: PickupPlatformFacade):
    """Records the bot's start time in the system_info table."""
    try:
        with facade_instance.persistence_service as p:
            p.set_system_info("bot_start_time", datetime.now().isoformat())
    except Exception as e:
        logger.error(f"Failed to record bot start time: {e}")


async def main(facade_instance: PickupPlatformFacade):
    """Initializes and runs the bot and the notification scheduler."""
    record_bot_start_time(facade_instance)

    if not TELEGRAM_BOT_TOKEN:
        logger.error("TELEGRAM_BOT_TOKEN environment variable not set.")
        return

    # Configure rate limiting
    rate_limiter = AIORateLimiter(
        overall_max_rate=TELEGRAM_RATE_LIMIT_OVERALL,
        group_max_rate=TELEGRAM_RATE_LIMIT_GROUP,
        group_time_period=60,
        max_retries=TELEGRAM_RATE_LIMIT_MAX_RETRIES,
    )

    context_types = ContextTypes(context=Context)
    application = (
        Application.builder()
        .token(TELEGRAM_BOT_TOKEN)
        .rate_limiter(rate_limiter)
        .context_types(context_types)
        .build()
    )
    application.bot_data[FACADE_KEY] = facade_instance

    setup_handlers(application)

    # Manually start the application
    await application.initialize()
    await application.start()
    await application.updater.start_polling()

    logger.info("Bot started and polling...")

    try:
        await scheduler(facade_instance, application)
    except asyncio.CancelledError:
        logger.info("Bot is stopping...")
    finally:
        # Gracefully stop the application
        if application.updater.running:
            await application.updater.stop()
        if application.running:
            await application.stop()
        await application.shutdown()
