"""Ports (interfaces) used by the core pipeline.

Ports define the minimal contracts for the source, storage, classifier and
messenger adapters so that the core can be reused with different backends
and tested with fakes. All calls may block on I/O, so they are coroutines;
cancellation travels with the awaiting task.
"""

from __future__ import annotations

from typing import List, Mapping, Optional, Protocol, Sequence

from swapwatch.core.models import (
    AlertRule,
    ClassifiedSummary,
    Item,
    ItemRecord,
    Presentation,
    RoutingConfig,
)


class SourcePort(Protocol):
    """Fetches the newest batch of items, retrying transient failures itself."""

    async def fetch_batch(self) -> List[Item]:
        ...


class RoutingConfigProvider(Protocol):
    """Backing lookup wrapped by the routing cache."""

    async def get_routing_config(self, scope_id: str) -> RoutingConfig:
        ...


class StoragePort(RoutingConfigProvider, Protocol):
    """Storage operations required by the core pipeline."""

    async def get_active_rules(self) -> List[AlertRule]:
        ...

    async def get_item_record(self, external_id: str) -> Optional[ItemRecord]:
        ...

    async def save_item_record(
        self,
        external_id: str,
        cleaned_title: str,
        deliveries: Mapping[str, str],
    ) -> None:
        ...

    async def trim_old_records(self) -> int:
        ...

    async def list_scope_ids(self) -> List[str]:
        ...


class ClassifierPort(Protocol):
    """Turns a raw title and body into a ClassifiedSummary."""

    async def classify(self, raw_title: str, raw_body: str) -> ClassifiedSummary:
        ...


class MessengerPort(Protocol):
    """Delivery operations required by the core pipeline."""

    async def deliver_new(self, destination_id: str, presentation: Presentation) -> str:
        ...

    async def notify_subscribers(
        self,
        destination_id: str,
        subscriber_ids: Sequence[str],
        context_link: Optional[str],
    ) -> None:
        ...

    async def edit_existing(
        self,
        destination_id: str,
        message_ref: str,
        presentation: Presentation,
    ) -> None:
        ...

    def message_link(self, destination_id: str, message_ref: str) -> Optional[str]:
        ...
