"""
Memory store for retrieved context.

Wraps the retrieval cache with query fingerprinting and per-key locking, and
provides a keyword-overlap lookup over loaded documents.
"""

import logging
import re
import threading
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from .cache import RetrievalCache

logger = logging.getLogger(__name__)

_WHITESPACE = re.compile(r"\s+")
_TRAILING_PUNCTUATION = re.compile(r"[\s,;:?!.]+$")
_POLITENESS = re.compile(r"\b(?:please|kindly|thanks|thank you)\b[,]?\s*")
_NON_WORD = re.compile(r"[^\w\s]")
_PARAGRAPH_BREAK = re.compile(r"\n\s*\n")

STOP_WORDS = frozenset({
    "the", "is", "at", "which", "on", "a", "an", "and", "or", "but",
    "in", "with", "to", "for", "of", "as", "by", "from", "what",
    "where", "when", "why", "how", "who", "about", "can", "could",
    "should", "would", "will", "are", "was", "were", "been", "be",
    "have", "has", "had", "do", "does", "did", "this", "that",
    "these", "those", "there", "here", "all", "each", "every",
    "both", "few", "more", "most", "other", "some", "such", "than",
    "too", "very", "just", "also", "now", "only", "then", "so"
})


class LookupFn(Protocol):
    """External retrieval collaborator."""

    def __call__(self, query: str, scope: Sequence[str]) -> Optional[str]:
        ...


def normalize_query(query: str) -> str:
    """Case-fold a query and collapse whitespace and filler words."""
    text = _WHITESPACE.sub(" ", query.strip().lower())
    text = _POLITENESS.sub("", text)
    text = _TRAILING_PUNCTUATION.sub("", text.strip())
    return text.strip()


def fingerprint(query: str, scope: Iterable[str] = ()) -> str:
    """Build the cache key for a query and its scope.

    Scope order does not matter; duplicate scope ids are ignored.

    Args:
        query: Query text
        scope: Document ids the retrieval is restricted to

    Returns:
        Stable cache key
    """
    scope_part = ",".join(sorted(set(scope)))
    return f"{normalize_query(query)}|{scope_part}"


def extract_keywords(text: str) -> List[str]:
    """Significant words of a text, stop words and short words removed."""
    words = _NON_WORD.sub(" ", text.lower()).split()
    seen: Dict[str, None] = {}
    for word in words:
        if len(word) > 2 and word not in STOP_WORDS:
            seen.setdefault(word, None)
    return list(seen)


class MemoryStore:
    """Cached retrieval of context for queries.

    Concurrent retrievals of the same key are serialized so the lookup runs
    once; different keys never wait on each other.
    """

    def __init__(self, cache: RetrievalCache, lookup: LookupFn):
        self.cache = cache
        self.lookup = lookup
        self._locks_guard = threading.Lock()
        self._key_locks: Dict[str, Tuple[threading.Lock, int]] = {}

    def _acquire_key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock, waiters = self._key_locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._key_locks[key] = (lock, waiters + 1)
        lock.acquire()
        return lock

    def _release_key_lock(self, key: str, lock: threading.Lock) -> None:
        lock.release()
        with self._locks_guard:
            _, waiters = self._key_locks[key]
            if waiters <= 1:
                del self._key_locks[key]
            else:
                self._key_locks[key] = (lock, waiters - 1)

    def retrieve(self, query: str, scope: Sequence[str] = ()) -> str:
        """Return context for a query, from cache when possible.

        Args:
            query: Query text
            scope: Document ids to restrict retrieval to

        Returns:
            Retrieved context, empty string when nothing is relevant
        """
        key = fingerprint(query, scope)
        lock = self._acquire_key_lock(key)
        try:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

            result = self.lookup(query, tuple(scope))
            value = result or ""
            self.cache.put(key, value)
            logger.debug("Stored %d chars of context for key %.50s", len(value), key)
            return value
        finally:
            self._release_key_lock(key, lock)


class KeywordLookup:
    """Keyword-overlap retrieval over in-memory documents.

    Documents are split into paragraphs; paragraphs are scored by the number
    of query keywords they contain and the best ones are returned.
    """

    def __init__(self, documents: Dict[str, str], max_passages: int = 3):
        if max_passages <= 0:
            raise ValueError("max_passages must be > 0")
        self.documents = dict(documents)
        self.max_passages = max_passages

    def __call__(self, query: str, scope: Sequence[str] = ()) -> Optional[str]:
        keywords = extract_keywords(query)
        if not keywords:
            return None

        doc_ids = [d for d in scope if d in self.documents] if scope else list(self.documents)
        scored = []
        for order, (doc_id, passage) in enumerate(self._passages(doc_ids)):
            passage_words = set(extract_keywords(passage))
            score = sum(1 for word in keywords if word in passage_words)
            if score > 0:
                scored.append((-score, order, doc_id, passage))

        if not scored:
            return None

        scored.sort()
        best = sorted(scored[:self.max_passages], key=lambda item: item[1])
        return "\n\n".join(f"[{doc_id}] {passage}" for _, _, doc_id, passage in best)

    def _passages(self, doc_ids: Sequence[str]):
        for doc_id in doc_ids:
            for paragraph in _PARAGRAPH_BREAK.split(self.documents[doc_id]):
                paragraph = paragraph.strip()
                if paragraph:
                    yield doc_id, paragraph
