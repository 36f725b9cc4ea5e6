"""
Data models for storage layer.

Defines the model call record persisted in the call ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class ModelCallRecord:
    """Immutable record of one model request/response pair.

    requested_model is what the caller asked for; resolved_family is the
    normalized family of the model that actually served the call, so every
    dated variant of a family is grouped together.
    """
    requested_model: str
    resolved_family: str
    tier: int
    input_tokens: int
    output_tokens: int
    cost_usd: float
    latency_ms: float
    served_model: str = ""
    attempts: int = 1
    unknown_rate: bool = False
    timestamp: datetime = field(default_factory=datetime.now)
    request_id: Optional[str] = None
    text: str = field(default="", repr=False, compare=False)  # Not persisted

    def __post_init__(self):
        """Validate counts and cost are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")
        if self.cost_usd < 0:
            raise ValueError("cost_usd cannot be negative")
        if self.tier < 0:
            raise ValueError("tier cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens
