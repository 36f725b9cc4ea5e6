"""
Query classification and splitting.

Heuristics that decide whether a query has several independent parts and
break it into sub-queries in their original order.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

# Words over which a query counts as long
LONG_QUERY_WORDS = 40

_COMPARATIVE = re.compile(r"\b(?:compare|compared|comparing|differ\w*|versus|vs\.?|between)\b", re.I)
_AGGREGATIVE = re.compile(r"\b(?:all|every|total|combined|across|overall)\b", re.I)
_ANALYTICAL = re.compile(r"\b(?:patterns?|trends?|themes?|common|recurring|emerge\w*)\b", re.I)
_TEMPORAL = re.compile(r"\b(?:over time|evolution|evolved|changes?|progress|history)\b", re.I)
_EXPLORATORY = re.compile(r"\?.*\?|\band also\b|\badditionally\b|\bfurthermore\b", re.I | re.S)
_MULTI_PART = re.compile(
    r"\?.*\?|\band also\b|\badditionally\b|\bfurthermore\b|;|\b(?:and|then) "
    r"(?:summari[sz]e|list|compare|explain|describe|identify|highlight|outline|"
    r"assess|evaluate|analy[sz]e)\b",
    re.I | re.S
)
_MEETING = re.compile(r"\b(?:meetings?|sessions?|calls?|discussions?|syncs?)\b", re.I)
_TIMEFRAME = re.compile(r"\b(?:last|recent|this week|yesterday|today)\b", re.I)

_CLAUSE_VERBS = (
    r"summari[sz]e|list|compare|explain|describe|identify|highlight|outline|"
    r"assess|evaluate|analy[sz]e|show|give|what|how|why|who|when|which|where"
)

_LEADING_MARKER = re.compile(r"^(?:and also|additionally|furthermore|also)\b,?\s*", re.I)
_QUESTION_BREAK = re.compile(r"(?<=\?)\s+")
_ENUMERATION = re.compile(r"(?:^|\s)\(?\d+[.)]\s+")
_CLAUSE_BREAK = re.compile(
    r"\s*;\s*"
    r"|,?\s+\b(?:and also|additionally|furthermore)\b,?\s+"
    rf"|,?\s+(?:and|then|and then)\s+(?=(?:{_CLAUSE_VERBS})\b)",
    re.I
)


class QueryIntent(Enum):
    """What the query asks for."""
    FACTUAL = "factual"
    COMPARATIVE = "comparative"
    AGGREGATIVE = "aggregative"
    ANALYTICAL = "analytical"
    TEMPORAL = "temporal"


class QueryComplexity(Enum):
    """How much of the context the query is likely to need."""
    SIMPLE = "simple"
    COMPARATIVE = "comparative"
    AGGREGATE = "aggregate"
    EXPLORATORY = "exploratory"


@dataclass(frozen=True)
class Classification:
    """Result of classifying a query."""
    intent: QueryIntent
    complexity: QueryComplexity
    mentions_meeting: bool
    mentions_timeframe: bool


@dataclass(frozen=True)
class DecompositionPlan:
    """Complexity score and candidate sub-queries of a query."""
    classification: Classification
    score: int
    parts: Tuple[str, ...]

    def should_split(self, threshold: int) -> bool:
        return self.score > threshold and len(self.parts) >= 2


def classify(query: str) -> Classification:
    """Classify a query's intent and complexity.

    Args:
        query: Query text

    Returns:
        Classification of the query
    """
    if _COMPARATIVE.search(query):
        intent = QueryIntent.COMPARATIVE
    elif _AGGREGATIVE.search(query):
        intent = QueryIntent.AGGREGATIVE
    elif _ANALYTICAL.search(query):
        intent = QueryIntent.ANALYTICAL
    elif _TEMPORAL.search(query):
        intent = QueryIntent.TEMPORAL
    else:
        intent = QueryIntent.FACTUAL

    if intent == QueryIntent.COMPARATIVE:
        complexity = QueryComplexity.COMPARATIVE
    elif intent in (QueryIntent.AGGREGATIVE, QueryIntent.ANALYTICAL):
        complexity = QueryComplexity.AGGREGATE
    elif _EXPLORATORY.search(query):
        complexity = QueryComplexity.EXPLORATORY
    else:
        complexity = QueryComplexity.SIMPLE

    return Classification(
        intent=intent,
        complexity=complexity,
        mentions_meeting=bool(_MEETING.search(query)),
        mentions_timeframe=bool(_TIMEFRAME.search(query))
    )


def split_query(query: str, max_parts: int = 5) -> List[str]:
    """Split a query into independent clauses, in order.

    Splits on question marks, numbered enumerations, semicolons and
    conjunctions that start a new instruction ("and summarize ..."). Parts
    beyond max_parts are folded into the last one.

    Args:
        query: Query text
        max_parts: Maximum number of parts to return

    Returns:
        Non-empty clauses; a single-element list when nothing splits
    """
    if max_parts < 1:
        raise ValueError("max_parts must be >= 1")

    parts: List[str] = []
    for question in _QUESTION_BREAK.split(query.strip()):
        for item in _ENUMERATION.split(question):
            for clause in _CLAUSE_BREAK.split(item):
                clause = _LEADING_MARKER.sub("", clause.strip(" ,;:\t\n"))
                if re.search(r"\w", clause):
                    parts.append(clause)

    if not parts:
        return [query.strip()]
    if len(parts) > max_parts:
        parts = parts[:max_parts - 1] + ["; ".join(parts[max_parts - 1:])]
    return parts


def estimate_complexity(query: str, parts: Optional[List[str]] = None) -> int:
    """Score how strongly a query calls for decomposition.

    Two points per clause beyond the first, one for an explicit multi-part
    or comparative marker, one for a long query.
    """
    if parts is None:
        parts = split_query(query)
    score = (len(parts) - 1) * 2
    if _MULTI_PART.search(query) or _COMPARATIVE.search(query):
        score += 1
    if len(query.split()) > LONG_QUERY_WORDS:
        score += 1
    return score


def plan_decomposition(query: str, max_sub_queries: int = 5) -> DecompositionPlan:
    """Classify, split and score a query in one pass."""
    parts = split_query(query, max_parts=max_sub_queries)
    return DecompositionPlan(
        classification=classify(query),
        score=estimate_complexity(query, parts),
        parts=tuple(parts)
    )
