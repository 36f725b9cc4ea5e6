"""
Model tier routing with retry and fallback.

Tiers are ordered by capability, most capable first. A call starts at the
requested tier, retries transient failures with exponential backoff, then
falls back one tier at a time until a tier answers or none are left.
"""

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import ConfigConflictError, FallbackExhaustedError, FatalError, TransientError
from .families import normalize_family, same_family
from .telemetry import TelemetryAggregator
from .token_counter import TokenUsage
from ..config.loader import DEFAULT_TIERS, RlmConfig, TierConfig
from ..storage.models import ModelCallRecord

logger = logging.getLogger(__name__)

Messages = List[Dict[str, str]]


@dataclass(frozen=True)
class InvokeResult:
    """Raw response from the reasoning collaborator."""
    text: str
    input_tokens: int
    output_tokens: int
    model: str = ""


class Invoker(Protocol):
    """Reasoning collaborator.

    Raises TransientError for retryable failures and FatalError otherwise.
    """

    def invoke(self, family: str, payload: Messages, params: Dict[str, Any]) -> InvokeResult:
        ...


def check_exclusive_params(params: Dict[str, Any]) -> None:
    """Reject per-call params that set both reasoning effort and temperature.

    Raises:
        ConfigConflictError: If both are set
    """
    effort = params.get("reasoning_effort")
    if effort not in (None, "none") and params.get("temperature") is not None:
        raise ConfigConflictError(
            f"reasoning_effort={effort} and temperature={params['temperature']} "
            "are mutually exclusive"
        )


class ModelRouter:
    """Dispatches model calls across capability tiers.

    Every successful call is priced and recorded in telemetry. A tier shift
    is recorded at most once per call, only when the serving tier differs
    from the requested one.
    """

    def __init__(
        self,
        invoker: Invoker,
        telemetry: TelemetryAggregator,
        tiers: Sequence[TierConfig] = DEFAULT_TIERS,
        max_retries: int = 2,
        backoff_base_s: float = 0.5,
        backoff_max_s: float = 8.0,
        sleep: Callable[[float], None] = time.sleep
    ):
        """Initialize the router.

        Args:
            invoker: Reasoning collaborator
            telemetry: Aggregator that receives records and tier shifts
            tiers: Tier table, most capable first
            max_retries: Same-tier retries after the first attempt
            backoff_base_s: First backoff delay
            backoff_max_s: Backoff ceiling
            sleep: Sleep function used between retries

        Raises:
            ValueError: If the tier table is empty or max_retries is negative
        """
        if not tiers:
            raise ValueError("at least one tier is required")
        if max_retries < 0:
            raise ValueError("max_retries cannot be negative")

        self.invoker = invoker
        self.telemetry = telemetry
        self.tiers = tuple(tiers)
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        invoker: Invoker,
        telemetry: TelemetryAggregator,
        config: RlmConfig,
        sleep: Callable[[float], None] = time.sleep
    ) -> "ModelRouter":
        return cls(
            invoker=invoker,
            telemetry=telemetry,
            tiers=config.tiers,
            max_retries=config.router.max_retries,
            backoff_base_s=config.router.backoff_base_s,
            backoff_max_s=config.router.backoff_max_s,
            sleep=sleep
        )

    def tier_of(self, family: str) -> Optional[int]:
        """Tier index of a family, or None when it is not in the table."""
        canonical = normalize_family(family)
        for index, tier in enumerate(self.tiers):
            if tier.canonical_family == canonical:
                return index
        return None

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number attempt (0-based)."""
        return min(self.backoff_max_s, self.backoff_base_s * (2 ** attempt))

    def _params_for(self, tier_index: int, params: Dict[str, Any]) -> Dict[str, Any]:
        # Ad hoc models below the table keep the caller's params
        if tier_index >= len(self.tiers) or self.tiers[tier_index].supports_params:
            return params
        if params:
            logger.debug("Tier %d (%s) does not accept %s, dropping them",
                         tier_index, self.tiers[tier_index].family, sorted(params))
        return {}

    def _plan(self, family: str, tier_hint: Optional[int]) -> Tuple[int, List[Tuple[int, str]]]:
        """Requested tier and the (tier, model) sequence to try."""
        if tier_hint is not None:
            start = int(tier_hint)
            if not 0 <= start < len(self.tiers):
                raise ValueError(f"tier_hint {tier_hint} outside tier table of {len(self.tiers)}")
        else:
            own_tier = self.tier_of(family)
            if own_tier is None:
                # Ad hoc tier below the table, no fallback
                logger.warning("Model family %s is not in the tier table, dispatching as is",
                               normalize_family(family))
                return len(self.tiers), [(len(self.tiers), family)]
            start = own_tier

        plan = []
        for index in range(start, len(self.tiers)):
            model = self.tiers[index].family
            if index == start and same_family(family, model):
                model = family
            plan.append((index, model))
        return start, plan

    def call(
        self,
        family: str,
        payload: Messages,
        tier_hint: Optional[int] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> ModelCallRecord:
        """Execute a model call with retry and fallback.

        Args:
            family: Requested model identifier
            payload: Chat messages
            tier_hint: Tier to start at, overriding the family's own tier
            params: Per-call parameters (reasoning_effort or temperature)

        Returns:
            Record of the successful call, response text included

        Raises:
            ConfigConflictError: If params set both reasoning effort and temperature
            FatalError: On a non-retryable failure, without retry or fallback
            FallbackExhaustedError: If every tier failed transiently
        """
        params = dict(params or {})
        check_exclusive_params(params)

        requested_tier, plan = self._plan(family, tier_hint)
        start = time.perf_counter()
        attempts = 0
        last_error: Optional[TransientError] = None

        for tier_index, model in plan:
            tier_params = self._params_for(tier_index, params)
            for attempt in range(self.max_retries + 1):
                attempts += 1
                try:
                    result = self.invoker.invoke(model, payload, tier_params)
                    if not result.text or not result.text.strip():
                        raise TransientError(f"Empty response from {model}", family=model)
                except TransientError as e:
                    last_error = e
                    logger.warning("Transient failure on %s (tier %d, attempt %d): %s",
                                   model, tier_index, attempt + 1, e)
                    if attempt < self.max_retries:
                        self._sleep(self.backoff_delay(attempt))
                    continue
                except FatalError:
                    logger.error("Fatal failure on %s (tier %d), not retrying", model, tier_index)
                    raise

                latency_ms = (time.perf_counter() - start) * 1000.0
                return self._complete(family, model, tier_index, requested_tier,
                                      result, attempts, latency_ms)

            if tier_index + 1 < len(self.tiers):
                logger.info("Falling back from tier %d to tier %d", tier_index, tier_index + 1)

        raise FallbackExhaustedError(
            f"All tiers failed for {family} after {attempts} attempts: {last_error}",
            family=normalize_family(family),
            attempts=attempts
        )

    def _complete(
        self,
        family: str,
        model: str,
        tier_index: int,
        requested_tier: int,
        result: InvokeResult,
        attempts: int,
        latency_ms: float
    ) -> ModelCallRecord:
        served_model = result.model or model
        if served_model != model:
            if same_family(served_model, model):
                logger.info("Dated variant %s answered for %s", served_model, model)
            else:
                logger.info("Model %s answered on tier %d for %s", served_model, tier_index, model)

        usage = TokenUsage(input_tokens=result.input_tokens, output_tokens=result.output_tokens)
        quote = self.telemetry.quote(served_model, usage)
        record = ModelCallRecord(
            requested_model=family,
            resolved_family=normalize_family(served_model),
            tier=tier_index,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost_usd=quote.cost_usd,
            latency_ms=latency_ms,
            served_model=served_model,
            attempts=attempts,
            unknown_rate=quote.unknown_rate,
            request_id=uuid.uuid4().hex,
            text=result.text
        )

        if tier_index != requested_tier:
            self.telemetry.record_tier_shift(
                requested_family=self.tiers[requested_tier].canonical_family,
                requested_tier=requested_tier,
                served_family=normalize_family(served_model),
                served_tier=tier_index
            )
        self.telemetry.record(record)
        return record
