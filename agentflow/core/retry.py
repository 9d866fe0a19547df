"""Retry and error-handling policy.

Node-level retries cover transient collaborator failures (timeouts, errors);
the workflow-level fallback strategy decides what happens once a node has
exhausted them.
"""

import random
from dataclasses import dataclass
from enum import Enum


class RetryStrategy(str, Enum):
    """Delay schedule between attempts of the same node."""

    IMMEDIATE = "immediate"
    FIXED_DELAY = "fixed_delay"
    EXPONENTIAL_BACKOFF = "exponential_backoff"


class FallbackStrategy(str, Enum):
    """Workflow-level reaction to a node that failed after its own retries."""

    STOP = "stop"  # Fail the run immediately
    CONTINUE = "continue"  # Follow the node's error edge, else fail
    FALLBACK_AGENT = "fallback_agent"  # One more attempt with the designated agent


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""

    strategy: RetryStrategy = RetryStrategy.EXPONENTIAL_BACKOFF
    max_retries: int = 3
    initial_delay: float = 5.0
    backoff_multiplier: float = 2.0
    max_delay: float = 300.0
    jitter: float = 0.1

    def should_retry(self, attempt: int) -> bool:
        """True if a failed ``attempt`` (1-indexed) may be retried."""
        return attempt <= self.max_retries

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before retrying a failed ``attempt`` (1-indexed)."""
        if self.strategy == RetryStrategy.IMMEDIATE or self.initial_delay <= 0:
            return 0.0
        if self.strategy == RetryStrategy.FIXED_DELAY:
            return min(self.initial_delay, self.max_delay)

        delay = min(
            self.initial_delay * (self.backoff_multiplier ** max(attempt - 1, 0)),
            self.max_delay,
        )
        jitter = random.uniform(-self.jitter * delay, self.jitter * delay)
        return max(delay + jitter, 0.0)
