"""
Model family normalization.

Maps concrete model identifiers (dated or versioned variants) onto a
canonical family name. Used for dispatch and for telemetry grouping, so a
family is counted once whichever variant served the request.
"""

import re
from enum import Enum

# Trailing version/date markers: -2025-08-07, -20250514, -0613, -latest,
# -preview, -v2, @20240620. Several may be chained.
_SUFFIX_PATTERN = re.compile(
    r"(?:[-@](?:\d{4}-\d{2}-\d{2}|\d{8}|\d{4}|latest|preview|v\d+(?:\.\d+)*))+$"
)


class ModelFamily(str, Enum):
    """Model families with known pricing and tier placement."""
    GPT_5_2 = "gpt-5.2"
    GPT_5_MINI = "gpt-5-mini"
    GPT_5_NANO = "gpt-5-nano"
    UNKNOWN = "unknown"


def normalize_family(identifier: str) -> str:
    """Strip version and date suffixes from a model identifier.

    Args:
        identifier: Model identifier as requested or as reported by the API

    Returns:
        Canonical family name, lowercased

    Raises:
        ValueError: If identifier is empty
    """
    if not identifier or not identifier.strip():
        raise ValueError("model identifier is required and cannot be empty")

    name = identifier.strip().lower()
    if "/" in name:
        name = name.rsplit("/", 1)[1]
    stripped = _SUFFIX_PATTERN.sub("", name)
    return stripped or name


def resolve_family(identifier: str) -> ModelFamily:
    """Resolve an identifier to a known ModelFamily, or UNKNOWN."""
    canonical = normalize_family(identifier)
    try:
        return ModelFamily(canonical)
    except ValueError:
        return ModelFamily.UNKNOWN


def same_family(left: str, right: str) -> bool:
    """True when both identifiers normalize to the same family."""
    return normalize_family(left) == normalize_family(right)
