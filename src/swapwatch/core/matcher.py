"""Boolean keyword matching (core domain).

Rules are three term lists evaluated against a lower-cased corpus:
- must_not: any term present rejects the corpus
- must_have: every term must be present
- any_of: at least one term must be present, unless the list is empty

Presence is a whole-token test, so "3080" does not match inside "3080ti".
"""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Sequence

from swapwatch.core.models import AlertRule

_WORD_CHAR = re.compile(r"\w")

# \b only fires on a word/non-word transition, so a term such as "$500"
# preceded by a space would never match. Sides of a term that begin or end
# with a non-word character use an explicit start/end-or-non-word boundary.
_WORD_START = r"\b"
_WORD_END = r"\b"
_SYMBOL_START = r"(?:^|(?<=\W))"
_SYMBOL_END = r"(?:$|(?=\W))"


def normalize_term(term: str) -> str:
    """Case-fold and trim a term the way every presence check sees it."""

    return term.strip().lower()


def normalize_terms(terms: Iterable[str]) -> List[str]:
    """Normalize a term list, dropping terms that end up empty."""

    normalized = (normalize_term(term) for term in terms)
    return [term for term in normalized if term]


def compile_term(term: str) -> re.Pattern:
    """Compile the boundary-aware pattern for an already normalized term."""

    head = _WORD_START if _WORD_CHAR.match(term[0]) else _SYMBOL_START
    tail = _WORD_END if _WORD_CHAR.match(term[-1]) else _SYMBOL_END
    return re.compile(head + re.escape(term) + tail, re.IGNORECASE)


class Matcher:
    """Evaluates alert rules with a memoized, thread-safe pattern cache."""

    def __init__(self) -> None:
        self._patterns: Dict[str, re.Pattern] = {}
        self._lock = threading.Lock()

    @property
    def cache_size(self) -> int:
        with self._lock:
            return len(self._patterns)

    def matches(
        self,
        corpus: str,
        must_have: Sequence[str] = (),
        any_of: Sequence[str] = (),
        must_not: Sequence[str] = (),
    ) -> bool:
        """Return True when the corpus satisfies all three clauses."""

        corpus = corpus.lower()

        # Cheapest rejection first.
        for term in must_not:
            if self.contains(corpus, term):
                return False

        for term in must_have:
            if not self.contains(corpus, term):
                return False

        if any_of and not any(self.contains(corpus, term) for term in any_of):
            return False

        return True

    def matches_rule(self, corpus: str, rule: AlertRule) -> bool:
        return self.matches(corpus, rule.must_have, rule.any_of, rule.must_not)

    def contains(self, corpus: str, term: str) -> bool:
        """Return True when the term occurs as a whole token in the corpus."""

        key = normalize_term(term)
        if not key:
            return False
        return self._pattern_for(key).search(corpus) is not None

    def _pattern_for(self, key: str) -> re.Pattern:
        with self._lock:
            pattern = self._patterns.get(key)
            if pattern is None:
                pattern = compile_term(key)
                self._patterns[key] = pattern
            return pattern
