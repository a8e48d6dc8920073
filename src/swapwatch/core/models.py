"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to Reddit, Telegram or storage specific types.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping, Optional, Tuple


@dataclass(frozen=True)
class AlertRule:
    """A subscriber's boolean keyword interest within one routing scope."""

    rule_id: str
    owner_id: str
    scope_id: str
    must_have: Tuple[str, ...] = ()
    any_of: Tuple[str, ...] = ()
    must_not: Tuple[str, ...] = ()
    raw_query: str = ""
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class Item:
    """A listing fetched from the source, immutable for the whole batch."""

    external_id: str
    title: str
    body: str = ""
    url: str = ""
    permalink: str = ""
    source: str = ""
    author: str = ""
    score: int = 0
    num_comments: int = 0
    created_utc: float = 0.0
    # Flair text, e.g. "Selling", "Sold", "Closed"
    status: str = ""
    # Removal category, e.g. "moderator", "deleted"; empty while live
    removed_by: str = ""
    thumbnail: str = ""

    @property
    def link(self) -> str:
        return self.permalink or self.url

    @property
    def is_removed(self) -> bool:
        return bool(self.removed_by.strip())


@dataclass(frozen=True)
class ClassifiedSummary:
    """Normalized view of an item produced by the classifier."""

    title: str
    description: str = ""
    price: str = ""
    location: str = ""
    condition: str = ""

    def corpus(self) -> str:
        """Return the searchable text rules are evaluated against."""

        return " ".join([self.title, self.description, self.location]).lower()


@dataclass(frozen=True)
class ItemRecord:
    """Persisted dedupe and delivery state for one external item."""

    external_id: str
    cleaned_title: str
    deliveries: Mapping[str, str] = field(default_factory=dict)
    first_recorded: Optional[datetime] = None


@dataclass(frozen=True)
class RoutingConfig:
    """Destinations owned by a routing scope."""

    scope_id: str
    feed_destination: str
    ping_destination: str = ""
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class PresentationField:
    name: str
    value: str
    inline: bool = True


@dataclass(frozen=True)
class ActionControl:
    """A button attached to a delivered message.

    Link controls carry ``url``; callback controls carry ``action_id``.
    """

    label: str
    emoji: str = ""
    url: Optional[str] = None
    action_id: Optional[str] = None


@dataclass(frozen=True)
class Presentation:
    """Transport-neutral message payload rendered by messenger adapters."""

    title: str
    description: str
    color: int
    url: Optional[str] = None
    fields: Tuple[PresentationField, ...] = ()
    footer: str = ""
    timestamp: Optional[datetime] = None
    thumbnail_url: Optional[str] = None
    actions: Tuple[ActionControl, ...] = ()
    strikethrough: bool = False


@dataclass(frozen=True)
class BatchReport:
    """Counters describing one completed batch run."""

    fetched: int = 0
    delivered: int = 0
    recorded: int = 0
    closed: int = 0
    unmatched: int = 0
    skipped: int = 0
    failed: int = 0
    trimmed: int = 0
