"""Telegram Bot API messenger adapter.

Uses the HTTP Bot API directly, so no Telethon session is needed on hosts
that only relay deals.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from typing import Any, Optional, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from swapwatch.adapters.presentation_rendering import (
    inline_keyboard,
    message_link,
    render_html,
    render_subscriber_ping,
)
from swapwatch.core.errors import DeliveryError, TransientDeliveryError
from swapwatch.core.models import Presentation

LOGGER = logging.getLogger(__name__)

_NOT_MODIFIED = "message is not modified"


class TelegramBotApiMessenger:
    """MessengerPort implementation that talks to api.telegram.org."""

    def __init__(
        self,
        bot_token: str,
        api_base: str = "https://api.telegram.org",
        timeout: float = 10.0,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ) -> None:
        if not bot_token:
            raise RuntimeError("BOT_TOKEN is required for the Bot API messenger")
        self._bot_token = bot_token
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff = backoff

    def _endpoint(self, method: str) -> str:
        # The Bot API endpoint is deterministic and derived from the token.
        return f"{self._api_base}/bot{self._bot_token}/{method}"

    def _post(self, method: str, payload: dict) -> Any:
        data = json.dumps(payload).encode("utf-8")
        request = urllib.request.Request(self._endpoint(method), data=data, method="POST")
        request.add_header("Content-Type", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")
            if e.code == 429 or e.code >= 500:
                raise TransientDeliveryError(f"Bot API error {e.code}: {detail}") from e
            raise DeliveryError(f"Bot API error {e.code}: {detail}") from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise TransientDeliveryError(f"Bot API unreachable: {e}") from e

        if not body.get("ok"):
            raise DeliveryError(f"Bot API rejected {method}: {body.get('description')}")
        return body.get("result")

    async def _call(self, method: str, payload: dict) -> Any:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientDeliveryError),
            wait=wait_exponential(multiplier=self._backoff, max=10),
            stop=stop_after_attempt(self._max_attempts),
            reraise=True,
        ):
            with attempt:
                result = await asyncio.to_thread(self._post, method, payload)
        return result

    @staticmethod
    def _message_payload(presentation: Presentation) -> dict:
        payload = {
            "text": render_html(presentation),
            "parse_mode": "HTML",
            "disable_web_page_preview": not presentation.thumbnail_url,
        }
        keyboard = inline_keyboard(presentation)
        if keyboard:
            payload["reply_markup"] = {"inline_keyboard": keyboard}
        return payload

    async def deliver_new(self, destination_id: str, presentation: Presentation) -> str:
        payload = {"chat_id": destination_id, **self._message_payload(presentation)}
        result = await self._call("sendMessage", payload)
        return str(result["message_id"])

    async def notify_subscribers(
        self,
        destination_id: str,
        subscriber_ids: Sequence[str],
        context_link: Optional[str],
    ) -> None:
        payload = {
            "chat_id": destination_id,
            "text": render_subscriber_ping(subscriber_ids, context_link),
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        await self._call("sendMessage", payload)

    async def edit_existing(
        self,
        destination_id: str,
        message_ref: str,
        presentation: Presentation,
    ) -> None:
        payload = {
            "chat_id": destination_id,
            "message_id": int(message_ref),
            **self._message_payload(presentation),
        }
        try:
            await self._call("editMessageText", payload)
        except DeliveryError as e:
            if _NOT_MODIFIED not in str(e):
                raise
            LOGGER.debug("Message %s in %s already up to date", message_ref, destination_id)

    def message_link(self, destination_id: str, message_ref: str) -> Optional[str]:
        return message_link(destination_id, message_ref)
