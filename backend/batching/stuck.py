"""Stuck detection for in-flight batches.

A batch is stuck when it claims to be processing but its executor has not
refreshed the heartbeat within ``max_age_ms``. The heartbeat is written by
the executor independently of any user-visible notification, so a failed
edit of the "thinking" message never makes a live batch look dead.
"""

from batching.types import BatchState, BatchStatus, HeartbeatConfig, StuckCheck, now_ms


def heartbeat_age_ms(batch: BatchState, now: int | None = None) -> int | None:
    """Milliseconds since the last heartbeat, or None if never stamped."""
    if batch.last_heartbeat is None:
        return None
    now = now if now is not None else now_ms()
    return max(0, now - batch.last_heartbeat)


def is_batch_stuck_by_heartbeat(
    batch: BatchState | None,
    config: HeartbeatConfig,
    now: int | None = None,
) -> StuckCheck:
    """Decide whether ``batch`` is stuck.

    Args:
        batch: The active batch, if any.
        config: Heartbeat thresholds.
        now: Current time; defaults to the wall clock.

    Returns:
        StuckCheck with ``is_stuck`` and, when stuck, the reason.
    """
    if batch is None or batch.status != BatchStatus.PROCESSING:
        return StuckCheck(is_stuck=False)

    now = now if now is not None else now_ms()
    if batch.last_heartbeat is None:
        # Legacy state without a heartbeat: fall back to the batch age.
        started = batch.batch_started_at or now
        age = now - started
        if age > config.max_age_ms:
            return StuckCheck(
                is_stuck=True,
                reason=f"No heartbeat recorded and batch is {age}ms old "
                f"(threshold {config.max_age_ms}ms)",
            )
        return StuckCheck(is_stuck=False)

    age = now - batch.last_heartbeat
    if age > config.max_age_ms:
        return StuckCheck(
            is_stuck=True,
            reason=f"No heartbeat for {age}ms (threshold {config.max_age_ms}ms)",
        )
    return StuckCheck(is_stuck=False)
