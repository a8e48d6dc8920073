"""Core batch pipeline.

One run enforces a strict order:
1) Fetch the item batch (fatal on failure)
2) Fetch every active rule once (fatal on failure)
3) Process items concurrently under a fixed worker budget:
   - known item: edit delivered messages if the listing is now closed
   - unseen live item: classify, match, build, deliver, notify
   - unseen closed item: skip
4) Persist one record per item that reached at least one scope
5) Trim old records (non-fatal)

This module is integration-agnostic. It only relies on ports, so Reddit,
Gemini, SQLite and Telegram never leak in here.
"""

from __future__ import annotations

import asyncio
import contextvars
import logging
import uuid
from collections import Counter
from dataclasses import dataclass, field
from typing import Awaitable, Dict, List, Mapping, Optional, Sequence, TypeVar

from swapwatch.core.config import FEED_POLICY_ALL_SCOPES, PipelineConfig
from swapwatch.core.dispatch_builder import build_closed_presentation, build_new_item_presentation
from swapwatch.core.errors import BatchFetchError, RecordNotFoundError, RuleFetchError
from swapwatch.core.matcher import Matcher
from swapwatch.core.models import (
    AlertRule,
    BatchReport,
    Item,
    ItemRecord,
    Presentation,
)
from swapwatch.core.ports import ClassifierPort, MessengerPort, SourcePort, StoragePort
from swapwatch.core.routing_cache import RoutingCache

LOGGER = logging.getLogger(__name__)

# Stamped onto log records by the app's logging filter.
current_run_id: contextvars.ContextVar[str] = contextvars.ContextVar("current_run_id", default="-")

_T = TypeVar("_T")

OUTCOME_DELIVERED = "delivered"
OUTCOME_CLOSED = "closed"
OUTCOME_UNMATCHED = "unmatched"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"


@dataclass(frozen=True)
class ItemOutcome:
    """Result of one item task, gathered after all tasks join."""

    external_id: str
    kind: str
    cleaned_title: str = ""
    deliveries: Mapping[str, str] = field(default_factory=dict)


def terminal_status(item: Item, terminal_statuses: frozenset) -> Optional[str]:
    """Return a label when the item is sold, closed or removed."""

    flair = item.status.strip()
    if flair.lower() in terminal_statuses:
        return flair
    if item.is_removed:
        return "Removed"
    return None


def match_scopes(matcher: Matcher, rules: Sequence[AlertRule], corpus: str) -> Dict[str, List[str]]:
    """Map scope id to the owners whose rules match, in rule order without repeats."""

    matches: Dict[str, List[str]] = {}
    for rule in rules:
        if not matcher.matches_rule(corpus, rule):
            continue
        owners = matches.setdefault(rule.scope_id, [])
        if rule.owner_id not in owners:
            owners.append(rule.owner_id)
    return matches


class BatchPipeline:
    """Orchestrates fetching, matching, delivery and persistence for one batch."""

    def __init__(
        self,
        store: StoragePort,
        classifier: ClassifierPort,
        source: SourcePort,
        messenger: MessengerPort,
        config: Optional[PipelineConfig] = None,
        matcher: Optional[Matcher] = None,
        routing_cache: Optional[RoutingCache] = None,
    ) -> None:
        self._store = store
        self._classifier = classifier
        self._source = source
        self._messenger = messenger
        self._config = config or PipelineConfig()
        # Matcher and cache outlive a single run so compiled patterns and
        # routing entries are reused across batches.
        self._matcher = matcher or Matcher()
        self._routing = routing_cache or RoutingCache(store, ttl=self._config.routing_ttl)

    async def run_batch(self) -> BatchReport:
        """Run one batch. Only fetch-phase failures are raised."""

        token = current_run_id.set(uuid.uuid4().hex[:12])
        try:
            return await self._run()
        finally:
            current_run_id.reset(token)

    async def _run(self) -> BatchReport:
        try:
            items = await self._call(self._source.fetch_batch(), timeout=self._config.fetch_timeout)
        except Exception as exc:
            raise BatchFetchError(f"Failed to fetch item batch: {exc}") from exc

        try:
            rules = await self._call(self._store.get_active_rules())
        except Exception as exc:
            raise RuleFetchError(f"Failed to load alert rules: {exc}") from exc

        all_scopes = await self._feed_scopes()
        LOGGER.info("Batch started: %s items, %s rules", len(items), len(rules))

        slots = asyncio.Semaphore(self._config.workers)
        outcomes = await asyncio.gather(
            *(self._process_item(slots, item, rules, all_scopes) for item in items)
        )

        recorded = 0
        for outcome in outcomes:
            if outcome.kind != OUTCOME_DELIVERED:
                continue
            # One write per item regardless of how many scopes it reached.
            try:
                await self._call(
                    self._store.save_item_record(
                        outcome.external_id,
                        outcome.cleaned_title,
                        dict(outcome.deliveries),
                    )
                )
                recorded += 1
            except Exception as exc:
                LOGGER.error("Failed to record delivery for %s: %s", outcome.external_id, exc)

        trimmed = 0
        try:
            trimmed = await self._call(self._store.trim_old_records())
        except Exception as exc:
            LOGGER.warning("Non-fatal: failed to trim old records: %s", exc)

        counts = Counter(outcome.kind for outcome in outcomes)
        report = BatchReport(
            fetched=len(items),
            delivered=counts[OUTCOME_DELIVERED],
            recorded=recorded,
            closed=counts[OUTCOME_CLOSED],
            unmatched=counts[OUTCOME_UNMATCHED],
            skipped=counts[OUTCOME_SKIPPED],
            failed=counts[OUTCOME_FAILED],
            trimmed=trimmed or 0,
        )
        LOGGER.info(
            "Batch complete: fetched=%s delivered=%s recorded=%s closed=%s unmatched=%s skipped=%s failed=%s",
            report.fetched,
            report.delivered,
            report.recorded,
            report.closed,
            report.unmatched,
            report.skipped,
            report.failed,
        )
        return report

    async def _feed_scopes(self) -> List[str]:
        if self._config.feed_policy != FEED_POLICY_ALL_SCOPES:
            return []
        try:
            return list(await self._call(self._store.list_scope_ids()))
        except Exception as exc:
            LOGGER.warning("Could not list feed scopes, posting to matched scopes only: %s", exc)
            return []

    async def _process_item(
        self,
        slots: asyncio.Semaphore,
        item: Item,
        rules: Sequence[AlertRule],
        all_scopes: Sequence[str],
    ) -> ItemOutcome:
        async with slots:
            try:
                return await self._handle_item(item, rules, all_scopes)
            except Exception:
                # Failure isolation: one bad item never sinks the batch.
                LOGGER.exception("Failed to process item %s", item.external_id)
                return ItemOutcome(item.external_id, OUTCOME_FAILED)

    async def _handle_item(
        self,
        item: Item,
        rules: Sequence[AlertRule],
        all_scopes: Sequence[str],
    ) -> ItemOutcome:
        record = await self._lookup_record(item.external_id)
        status = terminal_status(item, self._config.terminal_statuses)

        if record is not None:
            if status is None:
                return ItemOutcome(item.external_id, OUTCOME_SKIPPED)
            await self._close_out(item, record, status)
            return ItemOutcome(item.external_id, OUTCOME_CLOSED)

        # Never announce a listing that is already gone on first sighting.
        if status is not None:
            LOGGER.debug("Skipping %s: already %s", item.external_id, status)
            return ItemOutcome(item.external_id, OUTCOME_SKIPPED)

        return await self._handle_new(item, rules, all_scopes)

    async def _lookup_record(self, external_id: str) -> Optional[ItemRecord]:
        try:
            return await self._call(self._store.get_item_record(external_id))
        except RecordNotFoundError:
            return None

    async def _close_out(self, item: Item, record: ItemRecord, status: str) -> None:
        LOGGER.info("Detected %s for %s, updating %s message(s)", status, item.external_id, len(record.deliveries))
        presentation = build_closed_presentation(record.cleaned_title, item.link, status)

        for scope_id, message_ref in record.deliveries.items():
            try:
                routing = await self._call(self._routing.get_routing_config(scope_id))
                await self._call(
                    self._messenger.edit_existing(routing.feed_destination, message_ref, presentation)
                )
            except Exception as exc:
                LOGGER.warning(
                    "Failed to mark %s closed in scope %s (message %s): %s",
                    item.external_id,
                    scope_id,
                    message_ref,
                    exc,
                )

    async def _handle_new(
        self,
        item: Item,
        rules: Sequence[AlertRule],
        all_scopes: Sequence[str],
    ) -> ItemOutcome:
        LOGGER.info("Processing new item %s - %s", item.external_id, item.title)

        try:
            summary = await self._call(
                self._classifier.classify(item.title, item.body),
                timeout=self._config.classify_timeout,
            )
        except Exception as exc:
            # No record is written, so the item is retried as new next run.
            LOGGER.warning("Classification failed for %s: %s", item.external_id, exc)
            return ItemOutcome(item.external_id, OUTCOME_FAILED)

        matches = match_scopes(self._matcher, rules, summary.corpus())
        targets = list(matches)
        targets.extend(scope_id for scope_id in all_scopes if scope_id not in matches)
        if not targets:
            return ItemOutcome(item.external_id, OUTCOME_UNMATCHED, summary.title)

        presentation = build_new_item_presentation(item, summary)
        deliveries: Dict[str, str] = {}
        for scope_id in targets:
            message_ref = await self._dispatch(item, scope_id, presentation, matches.get(scope_id, []))
            if message_ref is not None:
                deliveries[scope_id] = message_ref

        if not deliveries:
            return ItemOutcome(item.external_id, OUTCOME_FAILED, summary.title)
        return ItemOutcome(item.external_id, OUTCOME_DELIVERED, summary.title, deliveries)

    async def _dispatch(
        self,
        item: Item,
        scope_id: str,
        presentation: Presentation,
        subscriber_ids: Sequence[str],
    ) -> Optional[str]:
        """Post to the scope feed and ping matched owners; return the feed message ref."""

        try:
            routing = await self._call(self._routing.get_routing_config(scope_id))
        except Exception as exc:
            LOGGER.warning("Could not get routing config for scope %s: %s", scope_id, exc)
            return None

        if not routing.feed_destination:
            LOGGER.warning("Scope %s has no feed destination configured", scope_id)
            return None

        try:
            message_ref = await self._call(
                self._messenger.deliver_new(routing.feed_destination, presentation)
            )
        except Exception as exc:
            LOGGER.warning("Failed to post %s to scope %s: %s", item.external_id, scope_id, exc)
            return None

        if subscriber_ids and routing.ping_destination:
            try:
                link = self._messenger.message_link(routing.feed_destination, message_ref) or item.link
                await self._call(
                    self._messenger.notify_subscribers(routing.ping_destination, list(subscriber_ids), link)
                )
            except Exception as exc:
                # The feed post stands; only the ping is lost for this run.
                LOGGER.warning("Failed to ping subscribers for %s in scope %s: %s", item.external_id, scope_id, exc)

        return message_ref

    async def _call(self, awaitable: Awaitable[_T], timeout: Optional[float] = None) -> _T:
        return await asyncio.wait_for(awaitable, timeout or self._config.call_timeout)


async def run_batch(
    store: StoragePort,
    classifier: ClassifierPort,
    source: SourcePort,
    messenger: MessengerPort,
    config: Optional[PipelineConfig] = None,
    matcher: Optional[Matcher] = None,
    routing_cache: Optional[RoutingCache] = None,
) -> BatchReport:
    """Run a single batch with freshly wired collaborators."""

    pipeline = BatchPipeline(
        store=store,
        classifier=classifier,
        source=source,
        messenger=messenger,
        config=config,
        matcher=matcher,
        routing_cache=routing_cache,
    )
    return await pipeline.run_batch()
