"""Shared Telegram rendering helpers.

Keeping formatting here prevents drift between the Telethon and Bot API
messengers and keeps messages consistent regardless of delivery channel.
"""

from __future__ import annotations

import html
from dataclasses import replace
from typing import List, Optional, Sequence

from swapwatch.core.dispatch_builder import COLOR_CLOSED, COLOR_COLD, COLOR_HOT, COLOR_MILD, COLOR_WARM
from swapwatch.core.models import Presentation

# Telegram has no embed colors, so the tier is shown as a leading marker.
COLOR_MARKERS = {
    COLOR_HOT: "🔴",
    COLOR_WARM: "🟠",
    COLOR_MILD: "🟡",
    COLOR_COLD: "⚪",
    COLOR_CLOSED: "⚫",
}

DIVIDER = "──────────────"

# Telegram rejects message texts above this length.
MAX_MESSAGE_CHARS = 4096

# Clipping never shortens a text part below this many characters.
MIN_CLIP_CHARS = 16


def _link(url: str, label: str) -> str:
    return f"<a href=\"{html.escape(url)}\">{label}</a>"


def _clip(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return value[: max(limit - 1, 0)].rstrip() + "…"


def _clip_presentation(presentation: Presentation, limit: int) -> Presentation:
    """Shorten every free-text part to ``limit`` characters before escaping."""

    return replace(
        presentation,
        title=_clip(presentation.title, limit),
        footer=_clip(presentation.footer, limit),
        fields=tuple(
            replace(field, name=_clip(field.name, limit), value=_clip(field.value, limit))
            for field in presentation.fields
        ),
    )


def _render(presentation: Presentation) -> str:
    marker = COLOR_MARKERS.get(presentation.color, "")
    title = html.escape(presentation.title)
    if presentation.strikethrough:
        title = f"<s>{title}</s>"
    if presentation.url:
        title = _link(presentation.url, title)
    title = f"<b>{title}</b>"
    if marker:
        title = f"{marker} {title}"

    parts: List[str] = []
    # A zero-width link lets Telegram's preview show the thumbnail.
    if presentation.thumbnail_url:
        parts.append(_link(presentation.thumbnail_url, "&#8203;") + title)
    else:
        parts.append(title)

    if presentation.description:
        parts.extend(["", html.escape(presentation.description)])

    if presentation.fields:
        parts.append("")
        for field in presentation.fields:
            parts.append(f"<b>{html.escape(field.name)}:</b> {html.escape(field.value)}")

    footer = presentation.footer
    if presentation.timestamp is not None:
        stamp = presentation.timestamp.strftime("%H:%M %d-%m-%Y UTC")
        footer = f"{footer} • {stamp}" if footer else stamp
    if footer:
        parts.extend([DIVIDER, f"<i>{html.escape(footer)}</i>"])

    return "\n".join(parts)


def render_html(presentation: Presentation) -> str:
    """Render a presentation as a Telegram HTML message body.

    Oversized messages lose their description first. If that is not enough,
    the title, fields and footer are clipped as plain text so markup and
    entities always stay whole.
    """

    text = _render(presentation)
    if len(text) <= MAX_MESSAGE_CHARS:
        return text
    if presentation.description:
        return render_html(replace(presentation, description=""))

    limit = MAX_MESSAGE_CHARS
    while limit > MIN_CLIP_CHARS:
        limit //= 2
        clipped = _clip_presentation(presentation, limit)
        text = _render(clipped)
        if len(text) <= MAX_MESSAGE_CHARS:
            return text
    # Only the link targets are still unbounded.
    return _render(replace(clipped, url=None, thumbnail_url=None))


def render_mention(subscriber_id: str) -> str:
    """Mention a subscriber by @username or numeric user id."""

    if subscriber_id.startswith("@"):
        return html.escape(subscriber_id)
    return _link(f"tg://user?id={subscriber_id}", "subscriber")


def render_subscriber_ping(subscriber_ids: Sequence[str], context_link: Optional[str]) -> str:
    """Render the consolidated ping listing every matched subscriber."""

    mentions = " ".join(render_mention(subscriber_id) for subscriber_id in subscriber_ids)
    line = f"{mentions} - <b>Match found in the deal feed!</b>"
    if context_link:
        line = f"{line} {_link(context_link, 'Open deal')}"
    return line


def inline_keyboard(presentation: Presentation) -> List[List[dict]]:
    """Return Bot API inline keyboard rows for the presentation's actions."""

    row: List[dict] = []
    for action in presentation.actions:
        label = f"{action.emoji} {action.label}".strip()
        if action.url:
            row.append({"text": label, "url": action.url})
        elif action.action_id:
            row.append({"text": label, "callback_data": action.action_id})
    return [row] if row else []


def message_link(destination_id: str, message_ref: str) -> Optional[str]:
    """Build a t.me link to a delivered message, when the chat allows one."""

    destination = destination_id.strip()
    if destination.startswith("@"):
        return f"https://t.me/{destination[1:]}/{message_ref}"
    # Channel/supergroup peer id: -100<channel_id>
    if destination.startswith("-100") and destination[4:].isdigit():
        return f"https://t.me/c/{destination[4:]}/{message_ref}"
    return None
