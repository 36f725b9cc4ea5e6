"""
Unit tests for the telemetry aggregator.
"""

import csv
import os
import shutil
import tempfile
import threading

import pytest

from rlm_lite.core.cache import RetrievalCache
from rlm_lite.core.telemetry import TelemetryAggregator, export_csv
from rlm_lite.core.token_counter import TokenUsage
from rlm_lite.storage.models import ModelCallRecord
from rlm_lite.storage.repository import fetch_recent_call_records, initialize_schema


def _record(model="gpt-5-mini", family=None, input_tokens=100, output_tokens=50,
            cost=0.001, unknown_rate=False):
    return ModelCallRecord(
        requested_model=model,
        resolved_family=family or model,
        tier=1,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        cost_usd=cost,
        latency_ms=12.5,
        served_model=model,
        unknown_rate=unknown_rate
    )


class TestTelemetryTotals:
    """Test running totals."""

    def setup_method(self):
        self.telemetry = TelemetryAggregator()

    def test_token_sums_match_snapshot(self):
        """Verify totals equal the sum of recorded calls."""
        records = [_record(input_tokens=i * 10, output_tokens=i) for i in range(1, 6)]
        for record in records:
            self.telemetry.record(record)

        snapshot = self.telemetry.snapshot()
        assert snapshot.input_tokens == sum(r.input_tokens for r in records)
        assert snapshot.output_tokens == sum(r.output_tokens for r in records)
        assert snapshot.total_tokens == snapshot.input_tokens + snapshot.output_tokens
        assert snapshot.call_count == 5
        assert snapshot.cost_usd == pytest.approx(0.005)

    def test_dated_variants_grouped_by_family(self):
        """Verify two dated variants of one family are reported once."""
        self.telemetry.record(_record(model="gpt-5-mini-2025-08-07", family="gpt-5-mini",
                                      input_tokens=100, output_tokens=10))
        self.telemetry.record(_record(model="gpt-5-mini-2025-10-01", family="gpt-5-mini",
                                      input_tokens=200, output_tokens=20))

        families = self.telemetry.snapshot().families
        assert list(families) == ["gpt-5-mini"]
        assert families["gpt-5-mini"].calls == 2
        assert families["gpt-5-mini"].input_tokens == 300
        assert families["gpt-5-mini"].output_tokens == 30

    def test_unknown_rate_flagged_once(self):
        """Verify unknown-rate families are listed without duplicates."""
        self.telemetry.record(_record(model="mystery", cost=0.0, unknown_rate=True))
        self.telemetry.record(_record(model="mystery", cost=0.0, unknown_rate=True))
        assert self.telemetry.snapshot().unknown_rate_families == ("mystery",)

    def test_concurrent_records(self):
        """Verify no updates are lost under concurrent recording."""
        def worker():
            for _ in range(100):
                self.telemetry.record(_record(input_tokens=1, output_tokens=1))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert self.telemetry.snapshot().input_tokens == 800

    def test_quote_uses_pricing(self):
        """Verify quote prices a call at the session rates."""
        quote = self.telemetry.quote("gpt-5.2-2025-12-11", TokenUsage(1_000_000, 0))
        assert quote.cost_usd == 1.75


class TestStagesAndGauge:
    """Test stage timing and the context gauge."""

    def setup_method(self):
        self.telemetry = TelemetryAggregator(context_windows={"gpt-5-mini": 1000})

    def test_record_stage_accumulates(self):
        """Verify stage durations add up by name."""
        self.telemetry.record_stage("retrieve", 5.0)
        self.telemetry.record_stage("retrieve", 2.5)
        self.telemetry.record_stage("model", 100.0)

        assert self.telemetry.snapshot().stage_ms == {"retrieve": 7.5, "model": 100.0}

    def test_negative_stage_rejected(self):
        """Verify negative durations are rejected."""
        with pytest.raises(ValueError, match="duration_ms cannot be negative"):
            self.telemetry.record_stage("model", -1)

    def test_stage_context_manager(self):
        """Verify the stage block is timed even when it raises."""
        with pytest.raises(RuntimeError):
            with self.telemetry.stage("merge"):
                raise RuntimeError("boom")
        assert "merge" in self.telemetry.snapshot().stage_ms

    def test_gauge_clamped(self):
        """Verify the gauge is used/capacity clamped to [0, 1]."""
        assert self.telemetry.observe_context("gpt-5-mini", 250) == 0.25
        assert self.telemetry.observe_context("gpt-5-mini-2025-08-07", 5000) == 1.0
        assert self.telemetry.snapshot().context_gauge == 1.0

    def test_gauge_indeterminate_for_unknown_capacity(self):
        """Verify unknown capacity gives an indeterminate gauge."""
        assert self.telemetry.observe_context("mystery", 10) is None
        assert self.telemetry.snapshot().context_gauge is None


class TestReset:
    """Test session reset."""

    def test_reset_zeroes_everything(self):
        """Verify reset gives zero counters and an indeterminate gauge."""
        cache = RetrievalCache(capacity=5)
        telemetry = TelemetryAggregator(cache=cache)
        cache.get("missing")
        cache.put("k", "v")
        cache.get("k")
        telemetry.record(_record())
        telemetry.record_stage("model", 10.0)
        telemetry.record_tier_shift("gpt-5.2", 0, "gpt-5-mini", 1)
        telemetry.observe_context("gpt-5.2", 1000)

        before = telemetry.snapshot()
        assert before.cache_hits == 1
        assert before.cache_misses == 1

        telemetry.reset()
        snapshot = telemetry.snapshot()

        assert snapshot.input_tokens == 0
        assert snapshot.output_tokens == 0
        assert snapshot.cost_usd == 0.0
        assert snapshot.call_count == 0
        assert snapshot.stage_ms == {}
        assert snapshot.cache_hits == 0
        assert snapshot.cache_misses == 0
        assert snapshot.families == {}
        assert snapshot.tier_shifts == ()
        assert snapshot.context_gauge is None
        # Cache counters themselves stay monotonic
        assert cache.hits == 1

    def test_cache_counts_relative_to_reset(self):
        """Verify cache activity after reset is reported from zero."""
        cache = RetrievalCache(capacity=5)
        telemetry = TelemetryAggregator(cache=cache)
        cache.get("a")
        telemetry.reset()
        cache.get("b")

        assert telemetry.snapshot().cache_misses == 1


class TestExport:
    """Test snapshot export and the ledger sink."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_export_csv(self):
        """Verify the CSV contains totals and per-stage rows."""
        telemetry = TelemetryAggregator()
        telemetry.record(_record(input_tokens=100, output_tokens=50))
        telemetry.record_stage("retrieve", 3.0)

        path = export_csv(telemetry.snapshot(), os.path.join(self.temp_dir, "metrics.csv"))

        with open(path, newline="", encoding="utf-8") as f:
            rows = dict(list(csv.reader(f))[1:])
        assert rows["input_tokens"] == "100"
        assert rows["total_tokens"] == "150"
        assert rows["stage_ms.retrieve"] == "3.0"
        assert rows["family.gpt-5-mini.calls"] == "1"
        assert rows["context_gauge"] == "indeterminate"

    def test_ledger_sink(self):
        """Verify recorded calls are appended to the ledger."""
        db_path = os.path.join(self.temp_dir, "ledger.db")
        initialize_schema(db_path)
        telemetry = TelemetryAggregator(ledger_path=db_path)

        telemetry.record(_record())
        telemetry.record(_record(model="gpt-5-nano"))

        records = fetch_recent_call_records(db_path=db_path)
        assert len(records) == 2
        assert {r.resolved_family for r in records} == {"gpt-5-mini", "gpt-5-nano"}

    def test_ledger_failure_counted_not_raised(self):
        """Verify a ledger write error is counted and the call still recorded."""
        # Schema never initialized, so the insert fails
        telemetry = TelemetryAggregator(ledger_path=os.path.join(self.temp_dir, "bare.db"))

        telemetry.record(_record())

        metrics = telemetry.snapshot()
        assert metrics.call_count == 1
        assert metrics.ledger_errors == 1
        assert dict(metrics.as_rows())["ledger_errors"] == "1"

        telemetry.reset()
        assert telemetry.snapshot().ledger_errors == 0
