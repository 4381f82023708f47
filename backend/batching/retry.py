"""Retry and backoff policy for failed batches.

The policy is a pure function of the attempt number:

    delay(attempt) = min(initial_delay * multiplier ** attempt, max_delay)

With the defaults (2s initial, x2, 64s cap) attempts 0..5 wait 2, 4, 8, 16,
32 and 64 seconds.
"""

import math

from batching.types import BatchState, BatchStatus, RetryConfig, RetryErrorRecord, now_ms


def calculate_retry_delay(attempt: int, config: RetryConfig) -> int:
    """Return the backoff delay in milliseconds for a zero-based attempt."""
    if attempt < 0:
        attempt = 0
    delay = config.initial_delay_ms * (config.multiplier ** attempt)
    return int(min(delay, config.max_delay_ms))


def retry_delay_seconds(attempt: int, config: RetryConfig) -> int:
    """Backoff delay rounded up to whole seconds, as handed to the timer."""
    return math.ceil(calculate_retry_delay(attempt, config) / 1000)


def should_retry(batch: BatchState, config: RetryConfig) -> bool:
    """True while the batch is still below the retry ceiling."""
    return batch.retry_count < config.max_retries


def mark_for_retry(
    batch: BatchState,
    error: str,
    config: RetryConfig,
    now: int | None = None,
) -> tuple[BatchState, int]:
    """Record a failure and park the batch until its retry is due.

    The batch keeps its id and message set. Its status becomes ``failed``
    so that a timer fire can tell "awaiting retry" apart from a batch that
    is still executing.

    Args:
        batch: The active batch that just failed.
        error: Human-readable failure text.
        config: Backoff parameters.
        now: Current time; defaults to the wall clock.

    Returns:
        The updated batch copy and the delay in whole seconds.
    """
    now = now if now is not None else now_ms()
    delay_seconds = retry_delay_seconds(batch.retry_count, config)
    updated = batch.model_copy(
        update={
            "status": BatchStatus.FAILED,
            "retry_count": batch.retry_count + 1,
            "retry_errors": [
                *batch.retry_errors,
                RetryErrorRecord(timestamp=now, message=error),
            ],
            "next_retry_at": now + delay_seconds * 1000,
        },
        deep=True,
    )
    return updated, delay_seconds


def recent_error_summary(batch: BatchState, fallback: str, limit: int = 3) -> str:
    """Join the last few retry errors for admin-facing diagnostics."""
    messages = [record.message for record in batch.retry_errors[-limit:]]
    return "; ".join(messages) or fallback
