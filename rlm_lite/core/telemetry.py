"""
Session telemetry aggregation.

Accumulates token counts, costs, per-stage timings, cache hit rates and tier
shifts for a session. Every mutation happens under the aggregator lock so
snapshots are always consistent.
"""

import csv
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from .cache import RetrievalCache
from .families import normalize_family
from .pricing import DEFAULT_PRICING_TABLE, CostQuote, PricingTable, calculate_cost
from .token_counter import TokenUsage
from ..storage.models import ModelCallRecord
from ..storage.repository import insert_call_record

logger = logging.getLogger(__name__)

DEFAULT_CONTEXT_WINDOWS: Dict[str, int] = {
    "gpt-5.2": 400_000,
    "gpt-5-mini": 400_000,
    "gpt-5-nano": 400_000,
}


@dataclass(frozen=True)
class TierShift:
    """A call served by a different tier than the one requested."""
    requested_family: str
    requested_tier: int
    served_family: str
    served_tier: int
    reason: str = "fallback"
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class FamilyTotals:
    """Running totals for one resolved model family."""
    calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def add(self, record: ModelCallRecord) -> "FamilyTotals":
        return FamilyTotals(
            calls=self.calls + 1,
            input_tokens=self.input_tokens + record.input_tokens,
            output_tokens=self.output_tokens + record.output_tokens,
            cost_usd=self.cost_usd + record.cost_usd
        )


@dataclass(frozen=True)
class SessionMetrics:
    """Point-in-time view of session telemetry.

    context_gauge is None when the context capacity of the observed family
    is unknown or nothing has been observed yet.
    """
    input_tokens: int
    output_tokens: int
    cost_usd: float
    call_count: int
    stage_ms: Dict[str, float]
    cache_hits: int
    cache_misses: int
    families: Dict[str, FamilyTotals]
    tier_shifts: Tuple[TierShift, ...]
    unknown_rate_families: Tuple[str, ...]
    context_gauge: Optional[float]
    ledger_errors: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    @property
    def cache_hit_rate(self) -> float:
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0

    def as_rows(self) -> List[Tuple[str, str]]:
        """Flatten the metrics into (metric, value) rows."""
        rows = [
            ("input_tokens", str(self.input_tokens)),
            ("output_tokens", str(self.output_tokens)),
            ("total_tokens", str(self.total_tokens)),
            ("cost_usd", f"{self.cost_usd:.6f}"),
            ("call_count", str(self.call_count)),
            ("cache_hits", str(self.cache_hits)),
            ("cache_misses", str(self.cache_misses)),
            ("tier_shifts", str(len(self.tier_shifts))),
            ("ledger_errors", str(self.ledger_errors)),
            ("context_gauge",
             "indeterminate" if self.context_gauge is None else f"{self.context_gauge:.4f}"),
        ]
        for name in sorted(self.stage_ms):
            rows.append((f"stage_ms.{name}", f"{self.stage_ms[name]:.1f}"))
        for family in sorted(self.families):
            totals = self.families[family]
            rows.append((f"family.{family}.calls", str(totals.calls)))
            rows.append((f"family.{family}.input_tokens", str(totals.input_tokens)))
            rows.append((f"family.{family}.output_tokens", str(totals.output_tokens)))
            rows.append((f"family.{family}.cost_usd", f"{totals.cost_usd:.6f}"))
        for family in self.unknown_rate_families:
            rows.append((f"unknown_rate.{family}", "true"))
        return rows


def export_csv(metrics: SessionMetrics, path: str) -> Path:
    """Write a metrics snapshot to a two-column CSV file.

    Args:
        metrics: Snapshot to export
        path: Output file path

    Returns:
        Path of the written file
    """
    output = Path(path)
    with open(output, "w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(["metric", "value"])
        writer.writerows(metrics.as_rows())
    return output


class TelemetryAggregator:
    """Collects per-call and per-stage telemetry for one session."""

    def __init__(
        self,
        pricing: PricingTable = DEFAULT_PRICING_TABLE,
        context_windows: Optional[Dict[str, int]] = None,
        cache: Optional[RetrievalCache] = None,
        ledger_path: Optional[str] = None
    ):
        """Initialize the aggregator.

        Args:
            pricing: Rates used to cost each call
            context_windows: Context capacity in tokens per family
            cache: Retrieval cache whose hit/miss counters are reported
            ledger_path: SQLite ledger that receives every recorded call
        """
        self.pricing = pricing
        self.context_windows = dict(
            DEFAULT_CONTEXT_WINDOWS if context_windows is None else context_windows
        )
        self.cache = cache
        self.ledger_path = ledger_path
        self._lock = threading.Lock()
        self._clear()

    def _clear(self) -> None:
        self._input_tokens = 0
        self._output_tokens = 0
        self._cost_usd = 0.0
        self._call_count = 0
        self._stage_ms: Dict[str, float] = {}
        self._families: Dict[str, FamilyTotals] = {}
        self._tier_shifts: List[TierShift] = []
        self._unknown_rate: List[str] = []
        self._context: Optional[Tuple[str, int]] = None
        self._ledger_errors = 0
        if self.cache is not None:
            self._cache_baseline = (self.cache.hits, self.cache.misses)
        else:
            self._cache_baseline = (0, 0)

    def quote(self, model: str, usage: TokenUsage) -> CostQuote:
        """Cost of a call at this session's rates."""
        return calculate_cost(model, usage, self.pricing)

    def record(self, record: ModelCallRecord) -> None:
        """Add a completed model call to the session totals.

        Args:
            record: Call record from the router
        """
        with self._lock:
            self._input_tokens += record.input_tokens
            self._output_tokens += record.output_tokens
            self._cost_usd += record.cost_usd
            self._call_count += 1
            family = record.resolved_family
            self._families[family] = self._families.get(family, FamilyTotals()).add(record)
            if record.unknown_rate and family not in self._unknown_rate:
                self._unknown_rate.append(family)

        if self.ledger_path:
            try:
                insert_call_record(record, self.ledger_path)
            except sqlite3.Error:
                # The call already succeeded; a ledger outage must not fail it
                logger.exception("Could not append call %s to ledger %s",
                                 record.request_id, self.ledger_path)
                with self._lock:
                    self._ledger_errors += 1

    def record_stage(self, name: str, duration_ms: float) -> None:
        """Add elapsed time to a named stage.

        Raises:
            ValueError: If duration is negative
        """
        if duration_ms < 0:
            raise ValueError("duration_ms cannot be negative")
        with self._lock:
            self._stage_ms[name] = self._stage_ms.get(name, 0.0) + duration_ms

    @contextmanager
    def stage(self, name: str) -> Iterator[None]:
        """Time the enclosed block under a stage name."""
        start = time.perf_counter()
        try:
            yield
        finally:
            self.record_stage(name, (time.perf_counter() - start) * 1000.0)

    def record_tier_shift(
        self,
        requested_family: str,
        requested_tier: int,
        served_family: str,
        served_tier: int,
        reason: str = "fallback"
    ) -> TierShift:
        """Record that a call was served by a different tier."""
        shift = TierShift(
            requested_family=requested_family,
            requested_tier=requested_tier,
            served_family=served_family,
            served_tier=served_tier,
            reason=reason
        )
        with self._lock:
            self._tier_shifts.append(shift)
        logger.info("Tier shift %s (tier %d) -> %s (tier %d): %s",
                    requested_family, requested_tier, served_family, served_tier, reason)
        return shift

    def observe_context(self, family: str, used_tokens: int) -> Optional[float]:
        """Record the context size of the latest prompt.

        Args:
            family: Model identifier the prompt is sent to
            used_tokens: Tokens in the prompt

        Returns:
            Gauge value in [0, 1], or None when capacity is unknown
        """
        canonical = normalize_family(family)
        with self._lock:
            self._context = (canonical, max(0, used_tokens))
            return self._gauge()

    def _gauge(self) -> Optional[float]:
        if self._context is None:
            return None
        family, used = self._context
        capacity = self.context_windows.get(family)
        if not capacity:
            return None
        return min(1.0, max(0.0, used / capacity))

    def snapshot(self) -> SessionMetrics:
        """Consistent copy of the current totals."""
        with self._lock:
            hits, misses = 0, 0
            if self.cache is not None:
                hits = self.cache.hits - self._cache_baseline[0]
                misses = self.cache.misses - self._cache_baseline[1]
            return SessionMetrics(
                input_tokens=self._input_tokens,
                output_tokens=self._output_tokens,
                cost_usd=self._cost_usd,
                call_count=self._call_count,
                stage_ms=dict(self._stage_ms),
                cache_hits=hits,
                cache_misses=misses,
                families=dict(self._families),
                tier_shifts=tuple(self._tier_shifts),
                unknown_rate_families=tuple(self._unknown_rate),
                context_gauge=self._gauge(),
                ledger_errors=self._ledger_errors
            )

    def reset(self) -> None:
        """Clear every counter atomically."""
        with self._lock:
            self._clear()
        logger.debug("Telemetry reset")
