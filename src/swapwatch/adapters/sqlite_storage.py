"""SQLite storage adapter.

Implements the core StoragePort using a simple SQLite database. The port
methods are coroutines that push the blocking sqlite3 work onto a worker
thread; every call opens its own connection, so concurrent item tasks never
share a connection across threads.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Mapping, Optional, Sequence

from swapwatch.core.errors import RoutingConfigNotFoundError
from swapwatch.core.models import AlertRule, ItemRecord, RoutingConfig

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RECORDS = 500


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteStorage:
    """Thin SQLite wrapper that satisfies the StoragePort contract."""

    def __init__(self, db_path: str, max_records: int = DEFAULT_MAX_RECORDS) -> None:
        self._db_path = db_path
        self._max_records = max_records

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def init_db(self) -> None:
        """Create tables if they do not exist.

        Tables:
        - alert_rules: subscriber keyword rules, term lists stored as JSON
        - routing_configs: feed/ping destinations per scope
        - item_records: one row per delivered external item (dedupe key)
        - item_deliveries: scope -> delivered message reference per item
        """

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alert_rules (
                    rule_id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    scope_id TEXT NOT NULL,
                    must_have TEXT NOT NULL,
                    any_of TEXT NOT NULL,
                    must_not TEXT NOT NULL,
                    raw_query TEXT NOT NULL,
                    created_at TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_alert_rules_owner ON alert_rules (scope_id, owner_id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS routing_configs (
                    scope_id TEXT PRIMARY KEY,
                    feed_destination TEXT NOT NULL,
                    ping_destination TEXT NOT NULL,
                    updated_at TIMESTAMP NOT NULL
                )
                """
            )
            # first_recorded drives retention; rows are never rewritten.
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS item_records (
                    external_id TEXT PRIMARY KEY,
                    cleaned_title TEXT NOT NULL,
                    first_recorded TIMESTAMP NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS item_deliveries (
                    external_id TEXT NOT NULL
                        REFERENCES item_records (external_id) ON DELETE CASCADE,
                    scope_id TEXT NOT NULL,
                    message_ref TEXT NOT NULL,
                    PRIMARY KEY (external_id, scope_id)
                )
                """
            )

    # -- StoragePort -----------------------------------------------------

    async def get_active_rules(self) -> List[AlertRule]:
        return await asyncio.to_thread(self._get_active_rules)

    async def get_item_record(self, external_id: str) -> Optional[ItemRecord]:
        return await asyncio.to_thread(self._get_item_record, external_id)

    async def save_item_record(
        self,
        external_id: str,
        cleaned_title: str,
        deliveries: Mapping[str, str],
    ) -> None:
        await asyncio.to_thread(self._save_item_record, external_id, cleaned_title, dict(deliveries))

    async def get_routing_config(self, scope_id: str) -> RoutingConfig:
        return await asyncio.to_thread(self._get_routing_config, scope_id)

    async def trim_old_records(self) -> int:
        return await asyncio.to_thread(self._trim_old_records)

    async def list_scope_ids(self) -> List[str]:
        return [config.scope_id for config in await asyncio.to_thread(self.list_routing_configs)]

    # -- blocking implementations ---------------------------------------

    def _get_active_rules(self) -> List[AlertRule]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM alert_rules ORDER BY created_at").fetchall()
        return [self._rule_from_row(row) for row in rows]

    def _get_item_record(self, external_id: str) -> Optional[ItemRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM item_records WHERE external_id = ?",
                (external_id,),
            ).fetchone()
            if row is None:
                return None
            deliveries = conn.execute(
                "SELECT scope_id, message_ref FROM item_deliveries WHERE external_id = ?",
                (external_id,),
            ).fetchall()
        return ItemRecord(
            external_id=row["external_id"],
            cleaned_title=row["cleaned_title"],
            deliveries={delivery["scope_id"]: delivery["message_ref"] for delivery in deliveries},
            first_recorded=_parse_time(row["first_recorded"]),
        )

    def _save_item_record(self, external_id: str, cleaned_title: str, deliveries: dict) -> None:
        # The record row is created once; later saves only add destinations.
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO item_records (external_id, cleaned_title, first_recorded)
                VALUES (?, ?, ?)
                """,
                (external_id, cleaned_title, _now()),
            )
            conn.executemany(
                """
                INSERT OR IGNORE INTO item_deliveries (external_id, scope_id, message_ref)
                VALUES (?, ?, ?)
                """,
                [(external_id, scope_id, message_ref) for scope_id, message_ref in deliveries.items()],
            )

    def _get_routing_config(self, scope_id: str) -> RoutingConfig:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM routing_configs WHERE scope_id = ?",
                (scope_id,),
            ).fetchone()
        if row is None:
            raise RoutingConfigNotFoundError(f"No routing config for scope {scope_id}")
        return self._routing_from_row(row)

    def _trim_old_records(self) -> int:
        """Hard-delete everything older than the newest max_records items."""

        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM item_records
                WHERE external_id NOT IN (
                    SELECT external_id FROM item_records
                    ORDER BY first_recorded DESC
                    LIMIT ?
                )
                """,
                (self._max_records,),
            )
            removed = cur.rowcount
        if removed:
            LOGGER.info("Trimmed %s old item records", removed)
        return removed

    # -- admin operations ----------------------------------------------

    def add_rule(
        self,
        owner_id: str,
        scope_id: str,
        must_have: Sequence[str],
        any_of: Sequence[str],
        must_not: Sequence[str],
        raw_query: str,
    ) -> AlertRule:
        """Insert a new alert rule and return it."""

        rule = AlertRule(
            rule_id=uuid.uuid4().hex,
            owner_id=owner_id,
            scope_id=scope_id,
            must_have=tuple(must_have),
            any_of=tuple(any_of),
            must_not=tuple(must_not),
            raw_query=raw_query,
            created_at=datetime.now(timezone.utc),
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO alert_rules (
                    rule_id, owner_id, scope_id, must_have, any_of, must_not, raw_query, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    rule.rule_id,
                    rule.owner_id,
                    rule.scope_id,
                    json.dumps(list(rule.must_have)),
                    json.dumps(list(rule.any_of)),
                    json.dumps(list(rule.must_not)),
                    rule.raw_query,
                    rule.created_at.isoformat(),
                ),
            )
        return rule

    def list_owner_rules(self, scope_id: str, owner_id: str) -> List[AlertRule]:
        """Return an owner's rules in a scope, newest first."""

        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM alert_rules
                WHERE scope_id = ? AND owner_id = ?
                ORDER BY created_at DESC
                """,
                (scope_id, owner_id),
            ).fetchall()
        return [self._rule_from_row(row) for row in rows]

    def delete_rule(self, rule_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM alert_rules WHERE rule_id = ?", (rule_id,))
            return cur.rowcount > 0

    def delete_owner_rules(self, scope_id: str, owner_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM alert_rules WHERE scope_id = ? AND owner_id = ?",
                (scope_id, owner_id),
            )
            return cur.rowcount

    def save_routing_config(self, scope_id: str, feed_destination: str, ping_destination: str = "") -> None:
        """Upsert the destinations for a scope."""

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO routing_configs (scope_id, feed_destination, ping_destination, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(scope_id) DO UPDATE SET
                    feed_destination = excluded.feed_destination,
                    ping_destination = excluded.ping_destination,
                    updated_at = excluded.updated_at
                """,
                (scope_id, feed_destination, ping_destination, _now()),
            )

    def list_routing_configs(self) -> List[RoutingConfig]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM routing_configs ORDER BY scope_id").fetchall()
        return [self._routing_from_row(row) for row in rows]

    @staticmethod
    def _rule_from_row(row: sqlite3.Row) -> AlertRule:
        return AlertRule(
            rule_id=row["rule_id"],
            owner_id=row["owner_id"],
            scope_id=row["scope_id"],
            must_have=tuple(json.loads(row["must_have"])),
            any_of=tuple(json.loads(row["any_of"])),
            must_not=tuple(json.loads(row["must_not"])),
            raw_query=row["raw_query"],
            created_at=_parse_time(row["created_at"]),
        )

    @staticmethod
    def _routing_from_row(row: sqlite3.Row) -> RoutingConfig:
        return RoutingConfig(
            scope_id=row["scope_id"],
            feed_destination=row["feed_destination"],
            ping_destination=row["ping_destination"],
            updated_at=_parse_time(row["updated_at"]),
        )
