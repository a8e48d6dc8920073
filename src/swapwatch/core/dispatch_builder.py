"""Presentation builders for new and closed listings.

Both builders are pure: the same inputs always produce the same payload, and
rendering to a concrete chat format is left to messenger adapters.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional

from swapwatch.core.models import (
    ActionControl,
    ClassifiedSummary,
    Item,
    Presentation,
    PresentationField,
)

COLOR_HOT = 0xFF0000
COLOR_WARM = 0xFFA500
COLOR_MILD = 0xFFFF00
COLOR_COLD = 0x808080
COLOR_CLOSED = 0x2C2F33

# (minimum score + comments, color), checked top-down.
ENGAGEMENT_TIERS = (
    (16, COLOR_HOT),
    (6, COLOR_WARM),
    (3, COLOR_MILD),
)

MUTE_ACTION_PREFIX = "mute_item|"

# Reddit puts placeholders in the thumbnail field for posts without media.
_THUMBNAIL_PLACEHOLDERS = {"", "self", "default", "nsfw", "spoiler", "image"}


def engagement_color(score: int, num_comments: int) -> int:
    """Return the color tier for an item's combined engagement."""

    interactions = score + num_comments
    for threshold, color in ENGAGEMENT_TIERS:
        if interactions >= threshold:
            return color
    return COLOR_COLD


def thumbnail_url(item: Item) -> Optional[str]:
    """Return the item's thumbnail when it is a real image URL."""

    thumbnail = item.thumbnail.strip()
    if thumbnail.lower() in _THUMBNAIL_PLACEHOLDERS:
        return None
    if not thumbnail.startswith(("http://", "https://")):
        return None
    return thumbnail


def build_new_item_presentation(item: Item, summary: ClassifiedSummary) -> Presentation:
    """Build the feed payload for a freshly classified item."""

    fields: List[PresentationField] = []
    if summary.price:
        fields.append(PresentationField(name="💰 Price", value=summary.price))
    if summary.condition:
        fields.append(PresentationField(name="✨ Condition", value=summary.condition))
    if summary.location:
        fields.append(PresentationField(name="📍 Location", value=summary.location))

    footer = f"👍 {item.score} | 💬 {item.num_comments}"
    if item.source:
        footer = f"r/{item.source} • {footer}"

    timestamp = None
    if item.created_utc:
        timestamp = datetime.fromtimestamp(item.created_utc, tz=timezone.utc)

    actions = (
        ActionControl(label="Open in Reddit", emoji="🌐", url=item.link or None),
        ActionControl(label="Mute Item", emoji="🔇", action_id=f"{MUTE_ACTION_PREFIX}{item.external_id}"),
    )

    return Presentation(
        title=f"📦 {summary.title}",
        description=summary.description,
        color=engagement_color(item.score, item.num_comments),
        url=item.link or None,
        fields=tuple(fields),
        footer=footer,
        timestamp=timestamp,
        thumbnail_url=thumbnail_url(item),
        actions=actions,
    )


def build_closed_presentation(last_known_title: str, item_link: str, status_label: str) -> Presentation:
    """Build the greyed-out replacement for a sold, closed or removed listing."""

    return Presentation(
        title=last_known_title,
        description=f"This deal has been marked as {status_label} on Reddit.",
        color=COLOR_CLOSED,
        url=item_link or None,
        footer="Deal Closed",
        strikethrough=True,
    )
