"""Retry utilities for source queries.

Wraps tenacity so that the connection manager can run an explicit retry
loop with a bounded budget and log every failed attempt.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import tenacity

logger = logging.getLogger(__name__)

__all__ = ["RetryConfig", "build_retrying"]


class RetryConfig:
    """Attempt count and fixed delay for one retried operation.

    ``max_attempts`` counts the first try, so a retry budget of ``n`` maps to
    ``n + 1`` attempts.
    """

    def __init__(self, max_attempts: int = 4, backoff_seconds: float = 0.0):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = max(backoff_seconds, 0.0)

    @classmethod
    def from_retries(cls, retries: int, backoff_seconds: float = 0.0) -> "RetryConfig":
        """Config for a retry budget (retries after the first try)."""
        return cls(max_attempts=max(retries, 0) + 1, backoff_seconds=backoff_seconds)

    def __repr__(self) -> str:
        return (
            f"RetryConfig(max_attempts={self.max_attempts}, "
            f"backoff_seconds={self.backoff_seconds})"
        )


def build_retrying(
    config: RetryConfig,
    operation_name: str = "operation",
    *,
    on_retry: Optional[Callable[[tenacity.RetryCallState], None]] = None,
) -> tenacity.Retrying:
    """Create a tenacity retryer for an operation.

    The retryer reraises the last exception once the budget is spent.

    Args:
        config: Retry configuration
        operation_name: Name for logging
        on_retry: Called before each sleep, after the failed attempt is logged

    Example:
        for attempt in build_retrying(RetryConfig.from_retries(2), "query"):
            with attempt:
                rows = session.execute(sql, params)
    """

    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s attempt %d/%d failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            config.max_attempts,
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )
        if on_retry is not None:
            on_retry(retry_state)

    return tenacity.Retrying(
        stop=tenacity.stop_after_attempt(config.max_attempts),
        wait=tenacity.wait_fixed(config.backoff_seconds),
        retry=tenacity.retry_if_exception_type(Exception),
        before_sleep=before_sleep_handler,
        reraise=True,
    )
