"""Reddit listing source adapter.

Fetches the newest posts of a subreddit through the public .json listing and
maps them to core Items. Rate limits and server errors are retried with
exponential backoff before the batch is given up on.
"""

from __future__ import annotations

import asyncio
import json
import logging
import urllib.error
import urllib.request
from typing import Any, List

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from swapwatch.core.errors import SourceError, TransientSourceError
from swapwatch.core.models import Item

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://www.reddit.com"
DEFAULT_SUBREDDIT = "CanadianHardwareSwap"
# Reddit bans generic user agents, so always send a descriptive one.
DEFAULT_USER_AGENT = "script:swapwatch:v1.0 (deal feed relay)"
IGNORED_AUTHORS = {"AutoModerator"}

_RETRYABLE_STATUSES = {403, 429}


def parse_listing(payload: dict, base_url: str = DEFAULT_BASE_URL) -> List[Item]:
    """Map a Reddit listing payload to Items, skipping bot posts."""

    items: List[Item] = []
    for child in payload.get("data", {}).get("children", []):
        data = child.get("data") or {}
        if not data.get("id") or data.get("author") in IGNORED_AUTHORS:
            continue
        permalink = data.get("permalink") or ""
        if permalink.startswith("/"):
            permalink = f"{base_url}{permalink}"
        items.append(
            Item(
                external_id=str(data["id"]),
                title=data.get("title") or "",
                body=data.get("selftext") or "",
                url=data.get("url") or "",
                permalink=permalink,
                source=data.get("subreddit") or "",
                author=data.get("author") or "",
                score=int(data.get("score") or 0),
                num_comments=int(data.get("num_comments") or 0),
                created_utc=float(data.get("created_utc") or 0),
                status=data.get("link_flair_text") or "",
                removed_by=data.get("removed_by_category") or "",
                thumbnail=data.get("thumbnail") or "",
            )
        )
    return items


class RedditSource:
    """SourcePort implementation backed by a subreddit's newest listing."""

    def __init__(
        self,
        subreddit: str = DEFAULT_SUBREDDIT,
        limit: int = 100,
        user_agent: str = DEFAULT_USER_AGENT,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 10.0,
        max_attempts: int = 8,
        backoff: float = 2.0,
    ) -> None:
        self._subreddit = subreddit
        self._limit = limit
        self._user_agent = user_agent
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._backoff = backoff

    def _endpoint(self) -> str:
        return f"{self._base_url}/r/{self._subreddit}/new.json?limit={self._limit}"

    async def fetch_batch(self) -> List[Item]:
        """Fetch and parse the newest listing, retrying transient failures."""

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(TransientSourceError),
            wait=wait_exponential(multiplier=self._backoff, max=60),
            stop=stop_after_attempt(self._max_attempts),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    LOGGER.warning(
                        "Retrying Reddit fetch (attempt %s/%s)",
                        attempt.retry_state.attempt_number,
                        self._max_attempts,
                    )
                payload = await asyncio.to_thread(self._get_listing)

        items = parse_listing(payload, self._base_url)
        LOGGER.info("Fetched %s posts from r/%s", len(items), self._subreddit)
        return items

    def _get_listing(self) -> Any:
        request = urllib.request.Request(self._endpoint(), method="GET")
        request.add_header("User-Agent", self._user_agent)
        request.add_header("Accept", "application/json")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            detail = e.read().decode("utf-8", errors="replace")[:200]
            if e.code in _RETRYABLE_STATUSES or e.code >= 500:
                raise TransientSourceError(f"Reddit returned {e.code}") from e
            raise SourceError(f"Reddit returned {e.code}: {detail}") from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise TransientSourceError(f"Reddit unreachable: {e}") from e

        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise SourceError(f"Failed to decode Reddit JSON: {e.msg}") from e
