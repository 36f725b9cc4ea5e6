"""
Model-call budget for a resolution.

The budget is a soft ceiling on the number of model calls. It never blocks a
call: once exhausted it only stops further decomposition, so remaining
queries are answered directly instead of dropped.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional

logger = logging.getLogger(__name__)

# A split is only worth it if at least two sub-calls can be made
MIN_SPLIT_CALLS = 2


class BudgetStatus(Enum):
    """Budget status, in order of severity."""
    UNLIMITED = auto()
    AVAILABLE = auto()
    EXHAUSTED = auto()


@dataclass(frozen=True)
class BudgetState:
    """Current budget usage."""
    calls_used: int
    calls_remaining: Optional[int]
    status: BudgetStatus


class CallBudget:
    """Thread-safe model-call counter with an optional limit."""

    def __init__(self, limit: Optional[int] = None):
        """Initialize the budget.

        Args:
            limit: Maximum model calls, None for unlimited

        Raises:
            ValueError: If limit is negative
        """
        if limit is not None and limit < 0:
            raise ValueError("budget limit cannot be negative")
        self.limit = limit
        self._used = 0
        self._warned = False
        self._lock = threading.Lock()

    def _remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(0, self.limit - self._used)

    @property
    def remaining(self) -> Optional[int]:
        with self._lock:
            return self._remaining()

    def state(self) -> BudgetState:
        with self._lock:
            remaining = self._remaining()
            if remaining is None:
                status = BudgetStatus.UNLIMITED
            elif remaining == 0:
                status = BudgetStatus.EXHAUSTED
            else:
                status = BudgetStatus.AVAILABLE
            return BudgetState(calls_used=self._used, calls_remaining=remaining, status=status)

    def permits_split(self) -> bool:
        """True when at least two more calls fit in the budget."""
        with self._lock:
            remaining = self._remaining()
            return remaining is None or remaining >= MIN_SPLIT_CALLS

    def consume(self, calls: int = 1) -> None:
        """Count model calls against the budget.

        Calls past the limit are still counted; a warning is logged the first
        time the budget runs out.
        """
        with self._lock:
            self._used += calls
            exhausted = self.limit is not None and self._used >= self.limit
            warn = exhausted and not self._warned
            if warn:
                self._warned = True
        if warn:
            logger.warning("Call budget of %d exhausted, answering remaining queries directly",
                           self.limit)
