"""
This module defines a custom context class for the Telegram bot.
"""
from telegram.ext import CallbackContext, ExtBot

from pickup_ledger.facade import PickupPlatformFacade

FACADE_KEY = "facade"


class CustomContext(CallbackContext[ExtBot, dict, dict, dict]):
    """
    A custom context class that exposes the PickupPlatformFacade stored in ``bot_data``.
    """

    @property
    def facade(self) -> PickupPlatformFacade:
        """
        The PickupPlatformFacade instance.
        """
        return self.bot_data[FACADE_KEY]
