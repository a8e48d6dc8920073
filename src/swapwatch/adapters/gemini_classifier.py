"""Gemini classifier adapter.

Talks to Gemini through its OpenAI-compatible endpoint with the openai SDK,
asking for a JSON object that maps onto ClassifiedSummary.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

import openai
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from swapwatch.adapters.classifier_prompts import CLASSIFY_SYSTEM_PROMPT, CLASSIFY_USER_TEMPLATE
from swapwatch.core.errors import ClassificationError
from swapwatch.core.models import ClassifiedSummary

LOGGER = logging.getLogger(__name__)

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"
DEFAULT_MODEL = "gemini-2.5-flash-lite"

# Long self-posts add cost without improving the summary.
MAX_BODY_CHARS = 4000

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)

_RETRYABLE_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
    openai.InternalServerError,
)


def _text_field(data: dict, key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return str(value).strip()


def parse_summary(content: str, fallback_title: str) -> ClassifiedSummary:
    """Parse the model's JSON answer, tolerating a Markdown code fence."""

    cleaned = _FENCE.sub("", content.strip())
    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ClassificationError(f"Classifier returned invalid JSON: {exc.msg}") from exc
    if not isinstance(data, dict):
        raise ClassificationError("Classifier returned a non-object JSON value")

    return ClassifiedSummary(
        title=_text_field(data, "title") or fallback_title.strip(),
        description=_text_field(data, "description"),
        price=_text_field(data, "price"),
        location=_text_field(data, "location"),
        condition=_text_field(data, "condition"),
    )


class GeminiClassifier:
    """ClassifierPort implementation backed by Gemini."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        base_url: str = GEMINI_OPENAI_BASE_URL,
        max_attempts: int = 3,
        backoff: float = 1.0,
        client: Any = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise RuntimeError("GEMINI_API_KEY is required for the Gemini classifier")
            client = openai.AsyncOpenAI(api_key=api_key, base_url=base_url)
        self._client = client
        self._model = model
        self._max_attempts = max_attempts
        self._backoff = backoff

    async def classify(self, raw_title: str, raw_body: str) -> ClassifiedSummary:
        """Return a cleaned summary of one listing."""

        prompt = CLASSIFY_USER_TEMPLATE.format(title=raw_title, body=raw_body[:MAX_BODY_CHARS])

        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
            wait=wait_exponential(multiplier=self._backoff, max=10),
            stop=stop_after_attempt(self._max_attempts),
            reraise=True,
        ):
            with attempt:
                response = await self._client.chat.completions.create(
                    model=self._model,
                    messages=[
                        {"role": "system", "content": CLASSIFY_SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                    response_format={"type": "json_object"},
                    temperature=0.2,
                )

        if not response.choices or not response.choices[0].message.content:
            raise ClassificationError("Empty response from classifier model")
        summary = parse_summary(response.choices[0].message.content, raw_title)
        LOGGER.debug("Classified %r as %r", raw_title, summary.title)
        return summary
