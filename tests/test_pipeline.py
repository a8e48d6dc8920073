from __future__ import annotations

import asyncio
import time
from typing import Optional, Sequence

import pytest

from swapwatch.adapters.reddit_source import RedditSource
from swapwatch.core.config import FEED_POLICY_ALL_SCOPES, PipelineConfig
from swapwatch.core.errors import (
    BatchFetchError,
    ClassificationError,
    DeliveryError,
    RecordNotFoundError,
    RoutingConfigNotFoundError,
    RuleFetchError,
    TransientSourceError,
)
from swapwatch.core.models import AlertRule, ClassifiedSummary, Item, ItemRecord, Presentation, RoutingConfig
from swapwatch.core.pipeline import BatchPipeline, current_run_id, run_batch, terminal_status


class FakeStore:
    def __init__(
        self,
        rules: Sequence[AlertRule] = (),
        routing: Optional[dict[str, RoutingConfig]] = None,
        scope_ids: Sequence[str] = (),
    ) -> None:
        self.rules = list(rules)
        self.routing = routing or {}
        self.scope_ids = list(scope_ids)
        self.records: dict[str, ItemRecord] = {}
        self.saved: list[tuple[str, str, dict[str, str]]] = []
        self.routing_calls: list[str] = []
        self.trim_calls = 0
        self.fail_rules = False
        self.fail_trim = False
        self.fail_lookup_for: set[str] = set()
        self.missing_raises = False

    async def get_active_rules(self) -> list[AlertRule]:
        if self.fail_rules:
            raise ConnectionError("rules backend down")
        return list(self.rules)

    async def get_item_record(self, external_id: str) -> Optional[ItemRecord]:
        if external_id in self.fail_lookup_for:
            raise ConnectionError("records backend down")
        record = self.records.get(external_id)
        if record is None and self.missing_raises:
            raise RecordNotFoundError(external_id)
        return record

    async def save_item_record(self, external_id: str, cleaned_title: str, deliveries) -> None:
        self.saved.append((external_id, cleaned_title, dict(deliveries)))
        existing = self.records.get(external_id)
        merged = dict(existing.deliveries) if existing else {}
        merged.update(deliveries)
        self.records[external_id] = ItemRecord(external_id, cleaned_title, merged)

    async def get_routing_config(self, scope_id: str) -> RoutingConfig:
        self.routing_calls.append(scope_id)
        if scope_id not in self.routing:
            raise RoutingConfigNotFoundError(scope_id)
        return self.routing[scope_id]

    async def trim_old_records(self) -> int:
        self.trim_calls += 1
        if self.fail_trim:
            raise ConnectionError("trim failed")
        return 0

    async def list_scope_ids(self) -> list[str]:
        return list(self.scope_ids)


class FakeClassifier:
    def __init__(self, fail_for: Sequence[str] = (), slow_for: Sequence[str] = ()) -> None:
        self.calls: list[str] = []
        self.fail_for = set(fail_for)
        self.slow_for = set(slow_for)
        self.in_flight = 0
        self.max_in_flight = 0

    async def classify(self, raw_title: str, raw_body: str) -> ClassifiedSummary:
        self.calls.append(raw_title)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(1 if raw_title in self.slow_for else 0.01)
            if raw_title in self.fail_for:
                raise ClassificationError("model unavailable")
            return ClassifiedSummary(title=raw_title, description=raw_body, price="$500")
        finally:
            self.in_flight -= 1


class FakeSource:
    def __init__(self, items: Sequence[Item] = (), error: Optional[Exception] = None) -> None:
        self.items = list(items)
        self.error = error

    async def fetch_batch(self) -> list[Item]:
        if self.error is not None:
            raise self.error
        return list(self.items)


class FakeMessenger:
    def __init__(
        self,
        fail_deliver_to: Sequence[str] = (),
        fail_edit_in: Sequence[str] = (),
        fail_notify: bool = False,
        fail_link: bool = False,
    ) -> None:
        self.delivered: list[tuple[str, Presentation]] = []
        self.notified: list[tuple[str, list[str], Optional[str]]] = []
        self.edited: list[tuple[str, str, Presentation]] = []
        self.fail_deliver_to = set(fail_deliver_to)
        self.fail_edit_in = set(fail_edit_in)
        self.fail_notify = fail_notify
        self.fail_link = fail_link

    async def deliver_new(self, destination_id: str, presentation: Presentation) -> str:
        if destination_id in self.fail_deliver_to:
            raise DeliveryError(f"cannot post to {destination_id}")
        self.delivered.append((destination_id, presentation))
        return f"msg{len(self.delivered)}"

    async def notify_subscribers(
        self, destination_id: str, subscriber_ids: Sequence[str], context_link: Optional[str]
    ) -> None:
        if self.fail_notify:
            raise DeliveryError("ping chat unavailable")
        self.notified.append((destination_id, list(subscriber_ids), context_link))

    async def edit_existing(self, destination_id: str, message_ref: str, presentation: Presentation) -> None:
        if destination_id in self.fail_edit_in:
            raise DeliveryError(f"cannot edit in {destination_id}")
        self.edited.append((destination_id, message_ref, presentation))

    def message_link(self, destination_id: str, message_ref: str) -> Optional[str]:
        if self.fail_link:
            raise ValueError(f"unexpected message ref {message_ref}")
        if destination_id.startswith("@"):
            return f"https://t.me/{destination_id[1:]}/{message_ref}"
        return None


def _rule(rule_id: str, owner_id: str, scope_id: str, **terms) -> AlertRule:
    return AlertRule(
        rule_id=rule_id,
        owner_id=owner_id,
        scope_id=scope_id,
        must_have=tuple(terms.get("must_have", ())),
        any_of=tuple(terms.get("any_of", ())),
        must_not=tuple(terms.get("must_not", ())),
    )


def _item(external_id: str, title: str, **overrides) -> Item:
    values = dict(
        external_id=external_id,
        title=title,
        body="Pickup in Toronto",
        permalink=f"https://www.reddit.com/comments/{external_id}/",
        source="CanadianHardwareSwap",
        status="Selling",
    )
    values.update(overrides)
    return Item(**values)


def _routing(*scope_ids: str) -> dict[str, RoutingConfig]:
    return {
        scope_id: RoutingConfig(scope_id, feed_destination=f"@{scope_id}_feed", ping_destination=f"@{scope_id}_ping")
        for scope_id in scope_ids
    }


def _pipeline(store, classifier, source, messenger, config: Optional[PipelineConfig] = None) -> BatchPipeline:
    return BatchPipeline(store=store, classifier=classifier, source=source, messenger=messenger, config=config)


def test_new_item_is_delivered_pinged_and_recorded() -> None:
    store = FakeStore(
        rules=[
            _rule("r1", "111", "scopeA", must_have=["3080"]),
            _rule("r2", "@bob", "scopeA", any_of=["toronto"]),
            _rule("r3", "111", "scopeA", must_have=["rtx"]),
        ],
        routing=_routing("scopeA"),
    )
    classifier = FakeClassifier()
    messenger = FakeMessenger()
    source = FakeSource([_item("i1", "RTX 3080 for sale")])

    report = asyncio.run(_pipeline(store, classifier, source, messenger).run_batch())

    assert report.fetched == 1
    assert report.delivered == 1
    assert report.recorded == 1
    assert [destination for destination, _ in messenger.delivered] == ["@scopeA_feed"]
    assert messenger.delivered[0][1].title == "📦 RTX 3080 for sale"
    assert messenger.notified == [("@scopeA_ping", ["111", "@bob"], "https://t.me/scopeA_feed/msg1")]
    assert store.saved == [("i1", "RTX 3080 for sale", {"scopeA": "msg1"})]
    assert store.trim_calls == 1


def test_recorded_item_is_not_processed_again() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["3080"])], routing=_routing("scopeA"))
    classifier = FakeClassifier()
    messenger = FakeMessenger()
    source = FakeSource([_item("i1", "RTX 3080 for sale")])
    pipeline = _pipeline(store, classifier, source, messenger)

    asyncio.run(pipeline.run_batch())
    second = asyncio.run(pipeline.run_batch())

    assert classifier.calls == ["RTX 3080 for sale"]
    assert len(messenger.delivered) == 1
    assert len(messenger.notified) == 1
    assert len(store.saved) == 1
    assert second.skipped == 1
    assert second.delivered == 0


def test_one_classification_failure_does_not_sink_the_batch() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["gpu"])], routing=_routing("scopeA"))
    classifier = FakeClassifier(fail_for=["broken gpu listing"])
    messenger = FakeMessenger()
    source = FakeSource(
        [
            _item("i1", "first gpu listing"),
            _item("i2", "broken gpu listing"),
            _item("i3", "third gpu listing"),
        ]
    )

    report = asyncio.run(_pipeline(store, classifier, source, messenger).run_batch())

    assert report.delivered == 2
    assert report.recorded == 2
    assert report.failed == 1
    assert sorted(external_id for external_id, _, _ in store.saved) == ["i1", "i3"]
    assert "i2" not in store.records


def test_terminal_transition_edits_existing_messages() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["3080"])], routing=_routing("scopeA"))
    store.records["i1"] = ItemRecord("i1", "RTX 3080", {"scopeA": "msg1"})
    classifier = FakeClassifier()
    messenger = FakeMessenger()
    source = FakeSource([_item("i1", "RTX 3080 for sale", status="Sold")])

    report = asyncio.run(_pipeline(store, classifier, source, messenger).run_batch())

    assert report.closed == 1
    assert classifier.calls == []
    assert messenger.delivered == []
    assert len(messenger.edited) == 1
    destination, message_ref, presentation = messenger.edited[0]
    assert (destination, message_ref) == ("@scopeA_feed", "msg1")
    assert presentation.title == "RTX 3080"
    assert presentation.strikethrough
    assert "Sold" in presentation.description
    assert store.saved == []


def test_removed_listing_is_closed_out() -> None:
    store = FakeStore(routing=_routing("scopeA"))
    store.records["i1"] = ItemRecord("i1", "RTX 3080", {"scopeA": "msg1"})
    messenger = FakeMessenger()
    source = FakeSource([_item("i1", "RTX 3080 for sale", removed_by="moderator")])

    asyncio.run(_pipeline(store, FakeClassifier(), source, messenger).run_batch())

    assert "Removed" in messenger.edited[0][2].description


def test_edit_failure_in_one_scope_does_not_stop_the_others() -> None:
    store = FakeStore(routing=_routing("scopeA", "scopeB"))
    store.records["i1"] = ItemRecord("i1", "RTX 3080", {"scopeA": "m1", "scopeB": "m2"})
    messenger = FakeMessenger(fail_edit_in=["@scopeA_feed"])
    source = FakeSource([_item("i1", "RTX 3080", status="closed")])

    report = asyncio.run(_pipeline(store, FakeClassifier(), source, messenger).run_batch())

    assert [(destination, ref) for destination, ref, _ in messenger.edited] == [("@scopeB_feed", "m2")]
    assert report.closed == 1
    assert report.failed == 0


def test_listing_already_closed_on_first_sighting_is_skipped() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["3080"])], routing=_routing("scopeA"))
    classifier = FakeClassifier()
    messenger = FakeMessenger()
    source = FakeSource([_item("i1", "RTX 3080", status="Sold"), _item("i2", "RTX 3080 ti", removed_by="deleted")])

    report = asyncio.run(_pipeline(store, classifier, source, messenger).run_batch())

    assert report.skipped == 2
    assert classifier.calls == []
    assert messenger.delivered == []
    assert messenger.edited == []


def test_unmatched_item_is_not_recorded() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["4090"])], routing=_routing("scopeA"))
    classifier = FakeClassifier()
    messenger = FakeMessenger()
    pipeline = _pipeline(store, classifier, FakeSource([_item("i1", "RTX 3080")]), messenger)

    report = asyncio.run(pipeline.run_batch())
    asyncio.run(pipeline.run_batch())

    assert report.unmatched == 1
    assert messenger.delivered == []
    assert store.saved == []
    # Without a record, the next run sees the item as new again.
    assert classifier.calls == ["RTX 3080", "RTX 3080"]


def test_source_failure_aborts_the_run() -> None:
    store = FakeStore()
    source = FakeSource(error=ConnectionError("reddit down"))

    with pytest.raises(BatchFetchError) as excinfo:
        asyncio.run(_pipeline(store, FakeClassifier(), source, FakeMessenger()).run_batch())

    assert isinstance(excinfo.value.__cause__, ConnectionError)
    assert store.trim_calls == 0


def test_rule_failure_aborts_the_run() -> None:
    store = FakeStore()
    store.fail_rules = True
    classifier = FakeClassifier()

    with pytest.raises(RuleFetchError):
        asyncio.run(_pipeline(store, classifier, FakeSource([_item("i1", "RTX 3080")]), FakeMessenger()).run_batch())

    assert classifier.calls == []


def test_trim_failure_is_not_fatal() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["3080"])], routing=_routing("scopeA"))
    store.fail_trim = True

    report = asyncio.run(
        _pipeline(store, FakeClassifier(), FakeSource([_item("i1", "RTX 3080")]), FakeMessenger()).run_batch()
    )

    assert report.delivered == 1
    assert report.trimmed == 0
    assert len(store.saved) == 1


def test_failed_scope_is_left_out_of_the_record() -> None:
    store = FakeStore(
        rules=[
            _rule("r1", "111", "scopeA", must_have=["3080"]),
            _rule("r2", "222", "scopeB", must_have=["3080"]),
            _rule("r3", "333", "scopeC", must_have=["3080"]),
        ],
        routing=_routing("scopeA", "scopeB"),
    )
    messenger = FakeMessenger(fail_deliver_to=["@scopeB_feed"])

    report = asyncio.run(
        _pipeline(store, FakeClassifier(), FakeSource([_item("i1", "RTX 3080")]), messenger).run_batch()
    )

    assert report.delivered == 1
    assert store.saved == [("i1", "RTX 3080", {"scopeA": "msg1"})]
    assert [destination for destination, _, _ in messenger.notified] == ["@scopeA_ping"]


def test_item_with_no_successful_scope_is_failed() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["3080"])], routing=_routing("scopeA"))
    messenger = FakeMessenger(fail_deliver_to=["@scopeA_feed"])

    report = asyncio.run(
        _pipeline(store, FakeClassifier(), FakeSource([_item("i1", "RTX 3080")]), messenger).run_batch()
    )

    assert report.failed == 1
    assert store.saved == []


def test_ping_failure_keeps_the_delivery() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["3080"])], routing=_routing("scopeA"))
    messenger = FakeMessenger(fail_notify=True)

    report = asyncio.run(
        _pipeline(store, FakeClassifier(), FakeSource([_item("i1", "RTX 3080")]), messenger).run_batch()
    )

    assert report.delivered == 1
    assert store.saved == [("i1", "RTX 3080", {"scopeA": "msg1"})]


def test_scope_without_ping_destination_skips_the_ping() -> None:
    store = FakeStore(
        rules=[_rule("r1", "111", "scopeA", must_have=["3080"])],
        routing={"scopeA": RoutingConfig("scopeA", feed_destination="-1001234")},
    )
    messenger = FakeMessenger()

    asyncio.run(_pipeline(store, FakeClassifier(), FakeSource([_item("i1", "RTX 3080")]), messenger).run_batch())

    assert len(messenger.delivered) == 1
    assert messenger.notified == []


def test_ping_falls_back_to_item_link_when_feed_has_no_public_link() -> None:
    store = FakeStore(
        rules=[_rule("r1", "111", "scopeA", must_have=["3080"])],
        routing={"scopeA": RoutingConfig("scopeA", feed_destination="-1001234", ping_destination="@pings")},
    )
    messenger = FakeMessenger()

    asyncio.run(_pipeline(store, FakeClassifier(), FakeSource([_item("i1", "RTX 3080")]), messenger).run_batch())

    assert messenger.notified == [("@pings", ["111"], "https://www.reddit.com/comments/i1/")]


def test_record_lookup_error_abandons_only_that_item() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["gpu"])], routing=_routing("scopeA"))
    store.fail_lookup_for = {"i1"}
    classifier = FakeClassifier()

    report = asyncio.run(
        _pipeline(
            store,
            classifier,
            FakeSource([_item("i1", "gpu one"), _item("i2", "gpu two")]),
            FakeMessenger(),
        ).run_batch()
    )

    assert report.failed == 1
    assert report.delivered == 1
    assert classifier.calls == ["gpu two"]


def test_worker_budget_bounds_concurrency() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["gpu"])], routing=_routing("scopeA"))
    classifier = FakeClassifier()
    items = [_item(f"i{index}", f"gpu number {index}") for index in range(8)]

    report = asyncio.run(
        _pipeline(store, classifier, FakeSource(items), FakeMessenger(), PipelineConfig(workers=2)).run_batch()
    )

    assert report.delivered == 8
    assert classifier.max_in_flight == 2


def test_slow_classification_times_out() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["gpu"])], routing=_routing("scopeA"))
    classifier = FakeClassifier(slow_for=["slow gpu"])
    config = PipelineConfig(classify_timeout=0.1)

    report = asyncio.run(
        _pipeline(
            store,
            classifier,
            FakeSource([_item("i1", "slow gpu"), _item("i2", "fast gpu")]),
            FakeMessenger(),
            config,
        ).run_batch()
    )

    assert report.failed == 1
    assert report.delivered == 1
    assert [external_id for external_id, _, _ in store.saved] == ["i2"]


def test_routing_configs_are_cached_across_items() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["gpu"])], routing=_routing("scopeA"))

    asyncio.run(
        _pipeline(
            store,
            FakeClassifier(),
            FakeSource([_item("i1", "gpu one"), _item("i2", "gpu two")]),
            FakeMessenger(),
            PipelineConfig(workers=1),
        ).run_batch()
    )

    assert store.routing_calls == ["scopeA"]


def test_all_scopes_policy_posts_to_every_feed() -> None:
    store = FakeStore(
        rules=[_rule("r1", "111", "scopeA", must_have=["3080"])],
        routing=_routing("scopeA", "scopeB"),
        scope_ids=["scopeA", "scopeB"],
    )
    messenger = FakeMessenger()
    config = PipelineConfig(feed_policy=FEED_POLICY_ALL_SCOPES)

    asyncio.run(
        _pipeline(store, FakeClassifier(), FakeSource([_item("i1", "RTX 3080")]), messenger, config).run_batch()
    )

    assert sorted(destination for destination, _ in messenger.delivered) == ["@scopeA_feed", "@scopeB_feed"]
    assert [destination for destination, _, _ in messenger.notified] == ["@scopeA_ping"]
    assert set(store.saved[0][2]) == {"scopeA", "scopeB"}


def test_run_id_is_scoped_to_the_run() -> None:
    seen: list[str] = []

    class RecordingSource(FakeSource):
        async def fetch_batch(self) -> list[Item]:
            seen.append(current_run_id.get())
            return []

    report = asyncio.run(run_batch(FakeStore(), FakeClassifier(), RecordingSource(), FakeMessenger()))

    assert report.fetched == 0
    assert seen[0] != "-"
    assert current_run_id.get() == "-"


def test_terminal_status_labels() -> None:
    statuses = frozenset({"sold", "closed"})

    assert terminal_status(_item("i1", "x", status="SOLD"), statuses) == "SOLD"
    assert terminal_status(_item("i1", "x", status=" Closed "), statuses) == "Closed"
    assert terminal_status(_item("i1", "x", removed_by="moderator"), statuses) == "Removed"
    assert terminal_status(_item("i1", "x", status="Selling"), statuses) is None


def test_source_fetch_uses_every_retry_attempt(monkeypatch) -> None:
    source = RedditSource(backoff=0, max_attempts=8)
    attempts = []

    def unavailable_listing():
        attempts.append(1)
        time.sleep(0.02)
        raise TransientSourceError("Reddit returned 503")

    monkeypatch.setattr(source, "_get_listing", unavailable_listing)
    # The whole retry run outlasts one per-call budget.
    config = PipelineConfig(call_timeout=0.05)

    with pytest.raises(BatchFetchError) as excinfo:
        asyncio.run(_pipeline(FakeStore(), FakeClassifier(), source, FakeMessenger(), config).run_batch())

    assert len(attempts) == 8
    assert isinstance(excinfo.value.__cause__, TransientSourceError)


def test_fetch_timeout_bounds_the_source() -> None:
    class HangingSource(FakeSource):
        async def fetch_batch(self) -> list[Item]:
            await asyncio.sleep(5)
            return []

    config = PipelineConfig(fetch_timeout=0.05)
    started = time.monotonic()

    with pytest.raises(BatchFetchError):
        asyncio.run(_pipeline(FakeStore(), FakeClassifier(), HangingSource(), FakeMessenger(), config).run_batch())

    assert time.monotonic() - started < 1


def test_record_not_found_is_treated_as_unseen() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["3080"])], routing=_routing("scopeA"))
    store.missing_raises = True
    classifier = FakeClassifier()
    messenger = FakeMessenger()

    report = asyncio.run(
        _pipeline(store, classifier, FakeSource([_item("i1", "RTX 3080")]), messenger).run_batch()
    )

    assert report.delivered == 1
    assert classifier.calls == ["RTX 3080"]
    assert store.saved == [("i1", "RTX 3080", {"scopeA": "msg1"})]


def test_cancelling_a_run_stops_in_flight_work() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["gpu"])], routing=_routing("scopeA"))
    classifier = FakeClassifier(slow_for=["slow gpu one", "slow gpu two"])
    messenger = FakeMessenger()
    source = FakeSource([_item("i1", "slow gpu one"), _item("i2", "slow gpu two")])
    pipeline = _pipeline(store, classifier, source, messenger)

    async def scenario() -> float:
        task = asyncio.create_task(pipeline.run_batch())
        await asyncio.sleep(0.1)
        started = time.monotonic()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        return time.monotonic() - started

    elapsed = asyncio.run(scenario())

    assert elapsed < 0.5
    assert classifier.calls == ["slow gpu one", "slow gpu two"]
    assert classifier.in_flight == 0
    assert messenger.delivered == []
    assert store.saved == []
    assert store.trim_calls == 0


def test_message_link_failure_keeps_the_delivery() -> None:
    store = FakeStore(rules=[_rule("r1", "111", "scopeA", must_have=["3080"])], routing=_routing("scopeA"))
    messenger = FakeMessenger(fail_link=True)

    report = asyncio.run(
        _pipeline(store, FakeClassifier(), FakeSource([_item("i1", "RTX 3080")]), messenger).run_batch()
    )

    assert report.delivered == 1
    assert report.failed == 0
    assert messenger.notified == []
    assert store.saved == [("i1", "RTX 3080", {"scopeA": "msg1"})]


def test_timeouts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        PipelineConfig(fetch_timeout=0)
    with pytest.raises(ValueError):
        PipelineConfig(call_timeout=-1)
