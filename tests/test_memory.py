"""
Unit tests for the memory store and keyword lookup.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

from rlm_lite.core.cache import RetrievalCache
from rlm_lite.core.memory import (
    KeywordLookup,
    MemoryStore,
    extract_keywords,
    fingerprint,
    normalize_query
)


class CountingLookup:
    """Lookup that records every call."""

    def __init__(self, result="context", delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, query, scope):
        with self._lock:
            self.calls.append((query, scope))
        if self.delay:
            time.sleep(self.delay)
        return self.result


class TestFingerprint:
    """Test cache key construction."""

    def test_case_and_whitespace_insensitive(self):
        """Verify formatting differences produce the same key."""
        assert fingerprint("What was  decided?") == fingerprint("what was decided")
        assert fingerprint("  Summarize\nthe risks. ") == fingerprint("summarize the risks")

    def test_politeness_ignored(self):
        """Verify filler words do not change the key."""
        assert normalize_query("Please list the owners, thanks!") == "list the owners"

    def test_scope_order_irrelevant(self):
        """Verify scope is compared as a set."""
        assert fingerprint("q", ["b", "a"]) == fingerprint("q", ["a", "b", "a"])

    def test_scope_distinguishes_keys(self):
        """Verify different scopes produce different keys."""
        assert fingerprint("q", ["a"]) != fingerprint("q", ["b"])
        assert fingerprint("q") != fingerprint("q", ["a"])


class TestMemoryStore:
    """Test cached retrieval."""

    def setup_method(self):
        self.cache = RetrievalCache(capacity=10)
        self.lookup = CountingLookup("retrieved context")
        self.store = MemoryStore(self.cache, self.lookup)

    def test_same_query_twice_is_one_miss_then_one_hit(self):
        """Verify the second identical retrieval is served from cache."""
        first = self.store.retrieve("What was decided?", ["m1"])
        second = self.store.retrieve("what was decided", ["m1"])

        assert first == second == "retrieved context"
        assert self.cache.misses == 1
        assert self.cache.hits == 1
        assert len(self.cache) == 1
        assert len(self.lookup.calls) == 1

    def test_empty_lookup_result_is_cached(self):
        """Verify nothing relevant yields an empty string that is cached."""
        store = MemoryStore(self.cache, CountingLookup(None))
        assert store.retrieve("unknown topic") == ""
        assert store.retrieve("unknown topic") == ""
        assert self.cache.hits == 1

    def test_lookup_receives_scope(self):
        """Verify scope is passed to the lookup collaborator."""
        self.store.retrieve("q", ["m2", "m1"])
        assert self.lookup.calls == [("q", ("m2", "m1"))]

    def test_concurrent_same_key_looks_up_once(self):
        """Verify concurrent retrievals of one key run the lookup once."""
        lookup = CountingLookup("slow context", delay=0.05)
        store = MemoryStore(self.cache, lookup)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: store.retrieve("same question"), range(4)))

        assert results == ["slow context"] * 4
        assert len(lookup.calls) == 1
        assert self.cache.misses == 1
        assert self.cache.hits == 3

    def test_key_locks_released(self):
        """Verify per-key locks do not accumulate."""
        self.store.retrieve("a")
        self.store.retrieve("b")
        assert self.store._key_locks == {}


class TestKeywordLookup:
    """Test keyword-overlap retrieval."""

    def setup_method(self):
        self.documents = {
            "standup": "Budget review moved to Friday.\n\nAlice owns the vendor contract.",
            "planning": "The vendor contract renewal is at risk.\n\nHiring freeze continues.",
        }
        self.lookup = KeywordLookup(self.documents)

    def test_extract_keywords_drops_stop_words(self):
        """Verify stop words and short words are removed."""
        assert extract_keywords("What is the vendor contract about?") == ["vendor", "contract"]

    def test_returns_matching_passages_in_document_order(self):
        """Verify relevant paragraphs are returned with their document id."""
        result = self.lookup("vendor contract", ())
        assert result == (
            "[standup] Alice owns the vendor contract.\n\n"
            "[planning] The vendor contract renewal is at risk."
        )

    def test_scope_restricts_documents(self):
        """Verify only scoped documents are searched."""
        result = self.lookup("vendor contract", ["planning"])
        assert result == "[planning] The vendor contract renewal is at risk."

    def test_no_match_returns_none(self):
        """Verify an irrelevant query finds nothing."""
        assert self.lookup("quarterly revenue", ()) is None
        assert self.lookup("what is the", ()) is None

    def test_max_passages(self):
        """Verify the number of returned passages is bounded."""
        lookup = KeywordLookup(self.documents, max_passages=1)
        result = lookup("vendor contract budget", ())
        assert result.count("[") == 1
