"""Bot-session Telethon client for the feed relay."""

from __future__ import annotations

import logging
import os

from telethon import TelegramClient

LOGGER = logging.getLogger(__name__)


async def build_bot_client(bot_token: str) -> TelegramClient:
    """Create a Telethon client and log it in with the bot token.

    Telethon still needs an application id/hash (API_ID, API_HASH) even for
    bots. The session file (SESSION_NAME, default "swapwatch-bot") caches the
    bot authorization between restarts. The caller disconnects the client.
    """

    api_id = os.getenv("API_ID")
    api_hash = os.getenv("API_HASH")
    if not api_id or not api_hash:
        raise RuntimeError("Missing API_ID or API_HASH in environment")
    if not bot_token:
        raise RuntimeError("Missing BOT_TOKEN in environment")

    client = TelegramClient(os.getenv("SESSION_NAME", "swapwatch-bot"), int(api_id), api_hash)
    await client.start(bot_token=bot_token)
    me = await client.get_me()
    LOGGER.info("Telegram bot session ready as @%s", getattr(me, "username", None) or me.id)
    return client
