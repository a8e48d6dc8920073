"""Telethon messenger adapter.

Delivers presentations through a bot-authorized Telethon client: feed posts
carry inline buttons, closed listings are edited in place and matched
subscribers are pinged in the scope's ping chat.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence, Union

from telethon import Button, errors
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from swapwatch.adapters.presentation_rendering import message_link, render_html, render_subscriber_ping
from swapwatch.core.models import Presentation

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS = (ConnectionError, errors.ServerError)


def resolve_peer(destination_id: str) -> Union[int, str]:
    """Numeric chat ids must reach Telethon as ints; usernames stay strings."""

    destination = destination_id.strip()
    if destination.lstrip("-").isdigit():
        return int(destination)
    return destination


def build_buttons(presentation: Presentation) -> Optional[List[List[Button]]]:
    row = []
    for action in presentation.actions:
        label = f"{action.emoji} {action.label}".strip()
        if action.url:
            row.append(Button.url(label, action.url))
        elif action.action_id:
            row.append(Button.inline(label, data=action.action_id.encode("utf-8")))
    return [row] if row else None


class TelegramMessenger:
    """MessengerPort implementation on top of a connected Telethon client."""

    def __init__(self, client, max_attempts: int = 3, backoff: float = 1.0) -> None:
        self._client = client
        self._max_attempts = max_attempts
        self._backoff = backoff

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
            wait=wait_exponential(multiplier=self._backoff, max=10),
            stop=stop_after_attempt(self._max_attempts),
            reraise=True,
        )

    async def deliver_new(self, destination_id: str, presentation: Presentation) -> str:
        """Post the presentation and return the new message id."""

        async for attempt in self._retrying():
            with attempt:
                message = await self._client.send_message(
                    resolve_peer(destination_id),
                    render_html(presentation),
                    parse_mode="html",
                    link_preview=bool(presentation.thumbnail_url),
                    buttons=build_buttons(presentation),
                )
        return str(message.id)

    async def notify_subscribers(
        self,
        destination_id: str,
        subscriber_ids: Sequence[str],
        context_link: Optional[str],
    ) -> None:
        async for attempt in self._retrying():
            with attempt:
                await self._client.send_message(
                    resolve_peer(destination_id),
                    render_subscriber_ping(subscriber_ids, context_link),
                    parse_mode="html",
                    link_preview=False,
                )

    async def edit_existing(
        self,
        destination_id: str,
        message_ref: str,
        presentation: Presentation,
    ) -> None:
        """Replace a delivered message; re-applying the same content is a no-op."""

        try:
            async for attempt in self._retrying():
                with attempt:
                    await self._client.edit_message(
                        resolve_peer(destination_id),
                        int(message_ref),
                        render_html(presentation),
                        parse_mode="html",
                        link_preview=bool(presentation.thumbnail_url),
                        buttons=build_buttons(presentation),
                    )
        except errors.MessageNotModifiedError:
            LOGGER.debug("Message %s in %s already up to date", message_ref, destination_id)

    def message_link(self, destination_id: str, message_ref: str) -> Optional[str]:
        return message_link(destination_id, message_ref)
