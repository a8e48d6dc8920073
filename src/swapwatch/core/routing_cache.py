"""In-memory TTL cache for routing configs."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, NamedTuple

from swapwatch.core.models import RoutingConfig
from swapwatch.core.ports import RoutingConfigProvider

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300.0


class _Entry(NamedTuple):
    config: RoutingConfig
    expires_at: float


class RoutingCache:
    """Memoize routing lookups per scope for a fixed TTL.

    Entries are immutable tuples replaced wholesale under the write lock, so
    concurrent readers never block each other and never observe a partial
    update. Failed lookups are not cached: a failing scope is retried on the
    next call.
    """

    def __init__(
        self,
        provider: RoutingConfigProvider,
        ttl: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._ttl = ttl
        self._clock = clock
        self._entries: Dict[str, _Entry] = {}
        self._write_lock = threading.Lock()

    async def get_routing_config(self, scope_id: str) -> RoutingConfig:
        entry = self._entries.get(scope_id)
        if entry is not None and self._clock() < entry.expires_at:
            return entry.config

        config = await self._provider.get_routing_config(scope_id)

        with self._write_lock:
            self._entries[scope_id] = _Entry(config, self._clock() + self._ttl)
        LOGGER.debug("Routing config cached for scope %s", scope_id)
        return config
