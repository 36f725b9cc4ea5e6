"""
Token counting and usage tracking.

Holds exact token counts reported by the model and a rough estimate used
for context-window gauges before a call is made.
"""

import math
from dataclasses import dataclass

# Rough characters-per-token ratio for English prose
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts without estimation or model-specific logic.
    """
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        """Validate token counts are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a text without a tokenizer.

    Args:
        text: Text to measure

    Returns:
        Estimated token count, rounded up
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)
