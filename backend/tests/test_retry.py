"""Tests for batching/retry.py and batching/stuck.py."""

from batching.retry import (
    calculate_retry_delay,
    mark_for_retry,
    recent_error_summary,
    retry_delay_seconds,
    should_retry,
)
from batching.stuck import heartbeat_age_ms, is_batch_stuck_by_heartbeat
from batching.types import BatchStatus, HeartbeatConfig, RetryConfig
from tests.conftest import make_batch

NOW = 1_700_000_000_000


class TestRetryDelay:
    def test_default_schedule(self) -> None:
        config = RetryConfig()
        assert [calculate_retry_delay(n, config) for n in range(7)] == [
            2000, 4000, 8000, 16000, 32000, 64000, 64000,
        ]

    def test_negative_attempt_treated_as_zero(self) -> None:
        assert calculate_retry_delay(-3, RetryConfig()) == 2000

    def test_delay_in_whole_seconds_rounds_up(self) -> None:
        config = RetryConfig(initial_delay_ms=1500, multiplier=1.0)
        assert retry_delay_seconds(0, config) == 2

    def test_custom_multiplier_and_cap(self) -> None:
        config = RetryConfig(initial_delay_ms=100, max_delay_ms=250, multiplier=3.0)
        assert calculate_retry_delay(1, config) == 250


class TestMarkForRetry:
    def test_keeps_id_and_messages(self) -> None:
        batch = make_batch("a", "b")
        updated, delay = mark_for_retry(batch, "boom", RetryConfig(), NOW)
        assert updated.batch_id == batch.batch_id
        assert updated.messages == batch.messages
        assert updated.retry_count == 1
        assert updated.status == BatchStatus.FAILED
        assert updated.retry_errors[-1].message == "boom"
        assert delay == 2
        assert updated.next_retry_at == NOW + 2000
        assert updated.awaiting_retry

    def test_failed_without_retry_time_is_terminal(self) -> None:
        terminal = make_batch("a", status=BatchStatus.FAILED)
        assert terminal.next_retry_at is None
        assert not terminal.awaiting_retry
        assert not make_batch("a", status=BatchStatus.PROCESSING).awaiting_retry

    def test_delay_grows_with_retry_count(self) -> None:
        batch = make_batch("a", retry_count=3)
        updated, delay = mark_for_retry(batch, "boom", RetryConfig(), NOW)
        assert delay == 16
        assert updated.retry_count == 4

    def test_should_retry_respects_ceiling(self) -> None:
        config = RetryConfig(max_retries=2)
        assert should_retry(make_batch("a", retry_count=1), config)
        assert not should_retry(make_batch("a", retry_count=2), config)

    def test_recent_error_summary_takes_last_three(self) -> None:
        batch = make_batch("a")
        for i in range(5):
            batch, _ = mark_for_retry(batch, f"err{i}", RetryConfig(), NOW)
        assert recent_error_summary(batch, "fallback") == "err2; err3; err4"

    def test_recent_error_summary_fallback(self) -> None:
        assert recent_error_summary(make_batch("a"), "only error") == "only error"


class TestStuckDetection:
    CONFIG = HeartbeatConfig(max_age_ms=30000, interval_ms=5000)

    def test_fresh_heartbeat_is_healthy(self) -> None:
        batch = make_batch("a", last_heartbeat=NOW - 10000)
        assert not is_batch_stuck_by_heartbeat(batch, self.CONFIG, NOW).is_stuck

    def test_stale_heartbeat_is_stuck(self) -> None:
        batch = make_batch("a", last_heartbeat=NOW - 30001)
        check = is_batch_stuck_by_heartbeat(batch, self.CONFIG, NOW)
        assert check.is_stuck
        assert check.reason is not None and "30001ms" in check.reason

    def test_non_processing_batch_is_never_stuck(self) -> None:
        batch = make_batch("a", status=BatchStatus.FAILED, last_heartbeat=NOW - 999999)
        assert not is_batch_stuck_by_heartbeat(batch, self.CONFIG, NOW).is_stuck

    def test_missing_batch_is_not_stuck(self) -> None:
        assert not is_batch_stuck_by_heartbeat(None, self.CONFIG, NOW).is_stuck

    def test_missing_heartbeat_falls_back_to_age(self) -> None:
        old = make_batch("a", started_at=NOW - 60000)
        young = make_batch("a", started_at=NOW - 1000)
        assert is_batch_stuck_by_heartbeat(old, self.CONFIG, NOW).is_stuck
        assert not is_batch_stuck_by_heartbeat(young, self.CONFIG, NOW).is_stuck

    def test_heartbeat_age(self) -> None:
        assert heartbeat_age_ms(make_batch("a", last_heartbeat=NOW - 1234), NOW) == 1234
        assert heartbeat_age_ms(make_batch("a"), NOW) is None
