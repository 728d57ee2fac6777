"""
Retry policy with exponential backoff.

Retry state is never held in process memory: the policy only computes the
next eligible time, which the coordinator stores on the chunk (or memory)
row and the claim query consumes.
"""

import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Mapping, Optional

from ..core.status import Status


@dataclass
class RetryConfig:
    """
    Configuration for retry behavior.

    Attributes:
        max_attempts: Maximum number of attempts (including first try)
        initial_delay_ms: Initial delay in milliseconds
        max_delay_ms: Maximum delay in milliseconds
        backoff_multiplier: Multiplier for exponential backoff
        jitter: Whether to add random jitter to delay
        max_retry_after_ms: Upper bound applied to provider Retry-After hints
    """
    max_attempts: int = 5
    initial_delay_ms: float = 1000.0
    max_delay_ms: float = 60000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True
    max_retry_after_ms: float = 300000.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RetryConfig":
        defaults = cls()
        return cls(
            max_attempts=int(data.get("max_attempts", defaults.max_attempts)),
            initial_delay_ms=float(data.get("initial_delay_ms", defaults.initial_delay_ms)),
            max_delay_ms=float(data.get("max_delay_ms", defaults.max_delay_ms)),
            backoff_multiplier=float(
                data.get("backoff_multiplier", defaults.backoff_multiplier)
            ),
            jitter=bool(data.get("jitter", defaults.jitter)),
            max_retry_after_ms=float(
                data.get("max_retry_after_ms", defaults.max_retry_after_ms)
            ),
        )


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """
    Calculate delay for a given attempt with exponential backoff.

    Args:
        attempt: Attempt number (0-based)
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay_ms = min(
        config.initial_delay_ms * (config.backoff_multiplier ** attempt),
        config.max_delay_ms
    )

    # ±25% random variation
    if config.jitter:
        jitter_factor = 0.75 + (random.random() * 0.5)
        delay_ms *= jitter_factor

    return delay_ms / 1000.0


def should_retry(status: Status, attempt_count: int, config: RetryConfig) -> bool:
    """True if a failed attempt should be scheduled again."""
    return status.transient and attempt_count < config.max_attempts


def next_attempt_at(
    status: Status,
    attempt_count: int,
    config: RetryConfig,
    now: datetime,
) -> Optional[datetime]:
    """
    Compute when a failed attempt may be retried.

    Args:
        status: Error of the failed attempt
        attempt_count: Attempts made so far (1 after the first failure)
        config: Retry configuration
        now: Current time

    Returns:
        The next eligible time, or None if the failure is terminal
        (permanent error or retry budget exhausted)
    """
    if not should_retry(status, attempt_count, config):
        return None

    delay = calculate_delay(max(0, attempt_count - 1), config)
    if status.retry_after_seconds is not None:
        retry_after = min(status.retry_after_seconds, config.max_retry_after_ms / 1000.0)
        delay = max(delay, retry_after)
    return now + timedelta(seconds=delay)
