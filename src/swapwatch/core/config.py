"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet

FEED_POLICY_MATCHED_ONLY = "matched_only"
FEED_POLICY_ALL_SCOPES = "all_scopes"
FEED_POLICIES = (FEED_POLICY_MATCHED_ONLY, FEED_POLICY_ALL_SCOPES)


@dataclass(frozen=True)
class PipelineConfig:
    """Batch pipeline settings.

    - workers: concurrent item tasks, independent of batch size
    - call_timeout: seconds allowed for each store or messenger call,
      including the adapter's own retries
    - fetch_timeout: seconds allowed for one source fetch, including every
      retry and backoff of the source adapter
    - classify_timeout: seconds allowed for one classifier call
    - routing_ttl: seconds a routing config stays cached
    - feed_policy: "matched_only" posts to scopes with a matching rule,
      "all_scopes" posts every new item to every configured scope feed
    - terminal_statuses: lower-cased flair values that close a listing
    """

    workers: int = 10
    call_timeout: float = 60.0
    fetch_timeout: float = 300.0
    classify_timeout: float = 60.0
    routing_ttl: float = 300.0
    feed_policy: str = FEED_POLICY_MATCHED_ONLY
    terminal_statuses: FrozenSet[str] = frozenset({"sold", "closed"})

    def __post_init__(self) -> None:
        if self.workers < 1:
            raise ValueError(f"workers must be at least 1, got {self.workers}")
        if self.feed_policy not in FEED_POLICIES:
            raise ValueError(f"Unsupported feed policy: {self.feed_policy}")
        for name in ("call_timeout", "fetch_timeout", "classify_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")
