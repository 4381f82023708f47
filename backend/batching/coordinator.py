"""Batch coordinator: the per-actor state machine around the two batch slots.

The coordinator is the single writer for an actor's ``ActorState``. Every
read-modify-write of an actor happens under that actor's ``asyncio.Lock``
and ends in one ``store.set``; the unit of work itself runs outside the lock
so that new messages keep flowing into ``pending`` while it executes.

Flow:
    enqueue -> pending (coalescing) -> timer fire -> promote to active
            -> BatchProcessor.process -> success: clear active
                                      -> failure: retry with backoff, or give up
"""

import asyncio
import math
import weakref
from functools import partial
from typing import Any
from uuid import uuid4

import structlog

from batching.ports import ActorStateStore, ObservabilitySink, Timer, Transport
from batching.processor import BatchProcessor, ProcessingOutcome
from batching.queue import (
    add_message_to_batch,
    clear_active,
    decide_schedule,
    is_duplicate_message,
    promote_pending,
    resume_active,
)
from batching.retry import mark_for_retry, recent_error_summary, should_retry
from batching.stuck import heartbeat_age_ms, is_batch_stuck_by_heartbeat
from batching.types import (
    ActorState,
    BatchConfig,
    BatchState,
    BatchStatus,
    EnqueueResult,
    HeartbeatConfig,
    ParsedInput,
    PendingMessage,
    RetryConfig,
    RetryErrorRecord,
    ScheduleDecision,
    ScheduleReason,
    now_ms,
)
from chat import trim_history
from config import settings
from events.bus import EventBus, get_event_bus
from events.types import ActorEvent, EventType
from telemetry import BatchTelemetry, Stage

logger = structlog.get_logger(__name__)

TIMER_HANDLER = "on_batch_timer"
FAILURE_MESSAGE = "Sorry, your message could not be processed after multiple attempts."


class BatchCoordinator:
    """Coalesces inbound messages per actor and drives their execution.

    Attributes:
        store: Durable actor state.
        timer: Durable timer port; fires call ``handle_timer``.
        processor: Executes one promoted batch.
        transport: Parses inbound payloads and delivers failure notices.
        event_bus: Receives lifecycle events.
        observability: Optional fire-and-forget outcome sink.
    """

    def __init__(
        self,
        store: ActorStateStore,
        timer: Timer,
        processor: BatchProcessor,
        transport: Transport,
        event_bus: EventBus | None = None,
        observability: ObservabilitySink | None = None,
        batch_config: BatchConfig | None = None,
        retry_config: RetryConfig | None = None,
        heartbeat_config: HeartbeatConfig | None = None,
        admin_user_ids: list[str] | None = None,
        max_history: int | None = None,
    ) -> None:
        self.store = store
        self.timer = timer
        self.processor = processor
        self.transport = transport
        self.event_bus = event_bus or get_event_bus()
        self.observability = observability
        self.batch_config = batch_config or BatchConfig.from_settings()
        self.retry_config = retry_config or RetryConfig.from_settings()
        self.heartbeat_config = heartbeat_config or HeartbeatConfig.from_settings()
        self.admin_user_ids = set(
            admin_user_ids if admin_user_ids is not None else settings.admin_user_ids
        )
        self.max_history = max_history if max_history is not None else settings.chat_max_history
        # Entries vanish once no coroutine holds or awaits the lock.
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._fallback_tasks: set[asyncio.Task[None]] = set()

    def _lock(self, actor_id: str) -> asyncio.Lock:
        lock = self._locks.get(actor_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[actor_id] = lock
        return lock

    async def _publish(
        self,
        event_type: EventType,
        actor_id: str,
        batch_id: str | None = None,
        **data: Any,
    ) -> None:
        await self.event_bus.publish(
            ActorEvent(type=event_type, actor_id=actor_id, batch_id=batch_id, data=data)
        )

    async def _observe(
        self,
        messages: list[PendingMessage],
        status: str,
        **fields: Any,
    ) -> None:
        """Upsert one observability record per distinct correlation id."""
        if self.observability is None:
            return
        seen: set[str] = set()
        for message in messages:
            event_id = message.correlation_id
            if not event_id or event_id in seen:
                continue
            seen.add(event_id)
            try:
                await self.observability.upsert_event(event_id, status, **fields)
            except Exception as e:
                logger.warning("observability_upsert_failed", event_id=event_id, error=str(e))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(self, actor_id: str, raw_ctx: dict[str, Any]) -> EnqueueResult:
        """Parse a raw transport payload and queue it."""
        parsed = self.transport.parse_context(raw_ctx)
        return await self.enqueue_parsed(actor_id, parsed, original_context=raw_ctx)

    async def enqueue_parsed(
        self,
        actor_id: str,
        parsed: ParsedInput,
        original_context: dict[str, Any] | None = None,
        request_id: str | None = None,
    ) -> EnqueueResult:
        """Append a message to the actor's pending batch and schedule a fire.

        Args:
            actor_id: Target actor.
            parsed: Transport-neutral message.
            original_context: Raw payload kept for replying later.
            request_id: Dedup key; taken from ``parsed.metadata`` or generated.

        Returns:
            EnqueueResult with ``queued=False`` for a duplicate request id.
        """
        request_id = request_id or parsed.metadata.get("request_id") or uuid4().hex
        correlation_id = parsed.metadata.get("event_id") or parsed.metadata.get("correlation_id")
        now = now_ms()
        message = PendingMessage(
            text=parsed.text,
            received_at=now,
            request_id=str(request_id),
            user_id=parsed.user_id,
            chat_id=parsed.chat_id,
            username=parsed.username,
            correlation_id=correlation_id,
            original_context=original_context or {},
        )

        recovered_batch_id: str | None = None
        async with self._lock(actor_id):
            state = await self.store.get(actor_id)

            stuck = is_batch_stuck_by_heartbeat(state.active, self.heartbeat_config, now)
            if stuck.is_stuck and state.active is not None:
                recovered_batch_id = state.active.batch_id
                logger.warning(
                    "batch_stuck_cleared_on_enqueue",
                    actor_id=actor_id,
                    batch_id=recovered_batch_id,
                    reason=stuck.reason,
                    dropped_messages=len(state.active.messages),
                )
                state = clear_active(state, now)

            if is_duplicate_message(message.request_id, state.active, state.pending):
                if recovered_batch_id is not None:
                    await self.store.set(state)
                duplicate = True
            else:
                duplicate = False
                pending = add_message_to_batch(state.pending, message, now)
                state = state.model_copy(
                    update={
                        "pending": pending,
                        "user_id": parsed.user_id or state.user_id,
                        "chat_id": parsed.chat_id or state.chat_id,
                        "updated_at": now,
                    }
                )
                await self.store.set(state)
                decision = decide_schedule(
                    pending,
                    state.active,
                    self.batch_config,
                    now,
                    recovered_from_stuck=recovered_batch_id is not None,
                )

        if recovered_batch_id is not None:
            await self._publish(
                EventType.BATCH_STUCK_RECOVERED,
                actor_id,
                recovered_batch_id,
                reason=stuck.reason,
            )

        if duplicate:
            logger.info("batch_duplicate_ignored", actor_id=actor_id, request_id=message.request_id)
            await self._publish(
                EventType.BATCH_DUPLICATE, actor_id, request_id=message.request_id
            )
            return EnqueueResult(queued=False, request_id=message.request_id)

        logger.info(
            "batch_message_queued",
            actor_id=actor_id,
            batch_id=pending.batch_id,
            request_id=message.request_id,
            pending_count=len(pending.messages),
        )
        await self._publish(
            EventType.BATCH_QUEUED,
            actor_id,
            pending.batch_id,
            request_id=message.request_id,
            pending_count=len(pending.messages),
        )
        await self._observe(
            [message],
            "processing",
            actor_id=actor_id,
            batch_id=pending.batch_id,
            text=message.text,
        )
        await self._schedule(actor_id, pending.batch_id, decision)
        return EnqueueResult(
            queued=True,
            batch_id=pending.batch_id,
            request_id=message.request_id,
        )

    async def _schedule(
        self,
        actor_id: str,
        batch_id: str | None,
        decision: ScheduleDecision,
    ) -> None:
        """Ask the timer for a fire; run the fire in-process if that fails."""
        payload = {
            "actor_id": actor_id,
            "batch_id": batch_id,
            "reason": decision.reason.value,
        }
        if decision.reason == ScheduleReason.AWAITING_ACTIVE:
            # Watchdog fires get their own row so they never displace the
            # batch's own retry or promotion fire.
            payload["timer_key"] = f"{batch_id}:watchdog"
        try:
            await self.timer.schedule(decision.delay_seconds, TIMER_HANDLER, payload)
        except Exception as e:
            logger.error(
                "batch_schedule_failed_running_inline",
                actor_id=actor_id,
                batch_id=batch_id,
                reason=decision.reason.value,
                error=str(e),
            )
            task = asyncio.create_task(
                self._fallback_fire(actor_id, batch_id, decision.delay_seconds)
            )
            self._fallback_tasks.add(task)
            task.add_done_callback(self._fallback_tasks.discard)
            return

        logger.debug(
            "batch_scheduled",
            actor_id=actor_id,
            batch_id=batch_id,
            reason=decision.reason.value,
            delay_seconds=decision.delay_seconds,
        )
        await self._publish(
            EventType.BATCH_SCHEDULED,
            actor_id,
            batch_id,
            reason=decision.reason.value,
            delay_seconds=decision.delay_seconds,
        )

    async def _fallback_fire(
        self,
        actor_id: str,
        batch_id: str | None,
        delay_seconds: float,
    ) -> None:
        if delay_seconds > 0:
            await asyncio.sleep(delay_seconds)
        try:
            await self.on_timer_fire(actor_id, batch_id)
        except Exception as e:
            logger.error(
                "batch_inline_fire_failed",
                actor_id=actor_id,
                batch_id=batch_id,
                error=str(e),
            )

    # ------------------------------------------------------------------
    # Timer fire
    # ------------------------------------------------------------------

    async def handle_timer(self, payload: dict[str, Any]) -> None:
        """Timer handler entry point registered under ``TIMER_HANDLER``."""
        await self.on_timer_fire(payload["actor_id"], payload.get("batch_id"))

    async def on_timer_fire(self, actor_id: str, batch_id: str | None = None) -> None:
        """Promote and execute the actor's next unit of work, if any.

        A batch awaiting retry is resumed once due. A healthy in-flight batch
        is left alone and a watchdog fire is scheduled for when it would turn
        stale. A stuck batch is dropped and the pending batch promoted.
        """
        now = now_ms()
        follow_up: tuple[str | None, ScheduleDecision] | None = None
        batch: BatchState | None = None
        recovered: tuple[str | None, str | None] | None = None

        async with self._lock(actor_id):
            state = await self.store.get(actor_id)
            active = state.active

            if active is not None and active.awaiting_retry:
                due_at = active.next_retry_at or now
                if due_at > now:
                    remaining = math.ceil((due_at - now) / 1000)
                    follow_up = (active.batch_id, ScheduleDecision(ScheduleReason.RETRY, remaining))
                else:
                    state = resume_active(state, now)
                    await self.store.set(state)
                    batch = state.active
            elif active is not None:
                stuck = is_batch_stuck_by_heartbeat(active, self.heartbeat_config, now)
                if not stuck.is_stuck:
                    age = heartbeat_age_ms(active, now) or 0
                    watchdog_delay = max(0, self.heartbeat_config.max_age_ms - age) / 1000 + 1
                    follow_up = (
                        active.batch_id,
                        ScheduleDecision(ScheduleReason.AWAITING_ACTIVE, watchdog_delay),
                    )
                    logger.debug(
                        "batch_fire_skipped_active_healthy",
                        actor_id=actor_id,
                        active_batch_id=active.batch_id,
                        fired_batch_id=batch_id,
                    )
                else:
                    recovered = (active.batch_id, stuck.reason)
                    logger.warning(
                        "batch_stuck_cleared_on_fire",
                        actor_id=actor_id,
                        batch_id=active.batch_id,
                        reason=stuck.reason,
                        dropped_messages=len(active.messages),
                    )
                    state = clear_active(state, now)

            if batch is None and follow_up is None:
                if state.pending.is_empty:
                    if recovered is not None:
                        await self.store.set(state)
                else:
                    state = promote_pending(state, now)
                    await self.store.set(state)
                    batch = state.active

            history = list(state.history)

        if recovered is not None:
            await self._publish(
                EventType.BATCH_STUCK_RECOVERED, actor_id, recovered[0], reason=recovered[1]
            )
        if follow_up is not None:
            await self._schedule(actor_id, follow_up[0], follow_up[1])
            return
        if batch is None:
            logger.debug("batch_fire_nothing_pending", actor_id=actor_id, fired_batch_id=batch_id)
            return

        await self._run_batch(actor_id, batch, history)

    async def _run_batch(
        self,
        actor_id: str,
        batch: BatchState,
        history: list[dict[str, Any]],
    ) -> None:
        telemetry = BatchTelemetry(actor_id=actor_id, batch_id=batch.batch_id)
        with structlog.contextvars.bound_contextvars(actor_id=actor_id, batch_id=batch.batch_id):
            telemetry.record_stage(
                Stage.PROMOTED,
                message_count=len(batch.messages),
                retry_count=batch.retry_count,
            )
            logger.info(
                "batch_promoted",
                message_count=len(batch.messages),
                retry_count=batch.retry_count,
            )
            await self._publish(
                EventType.BATCH_PROMOTED,
                actor_id,
                batch.batch_id,
                message_count=len(batch.messages),
                retry_count=batch.retry_count,
            )

            try:
                outcome = await self.processor.process(
                    actor_id,
                    batch,
                    history,
                    heartbeat=partial(self._heartbeat, actor_id, batch.batch_id),
                    telemetry=telemetry,
                )
            except Exception as e:
                error = str(e) or type(e).__name__
                logger.error("batch_processing_failed", error=error, error_type=type(e).__name__)
                telemetry.record_error(error)
                await self._handle_failure(actor_id, batch, error, telemetry)
                return

            await self._handle_success(actor_id, batch, outcome, telemetry)

    async def _heartbeat(
        self,
        actor_id: str,
        batch_id: str | None,
        message_ref: str | None,
    ) -> None:
        """Persist liveness (and the placeholder reference) for the active batch."""
        async with self._lock(actor_id):
            state = await self.store.get(actor_id)
            active = state.active
            if active is None or active.batch_id != batch_id:
                return
            update: dict[str, Any] = {"last_heartbeat": now_ms()}
            if message_ref is not None:
                update["message_ref"] = message_ref
            await self.store.set(
                state.model_copy(update={"active": active.model_copy(update=update)})
            )
        await self._publish(EventType.BATCH_HEARTBEAT, actor_id, batch_id)

    async def _handle_success(
        self,
        actor_id: str,
        batch: BatchState,
        outcome: ProcessingOutcome,
        telemetry: BatchTelemetry,
    ) -> None:
        now = now_ms()
        async with self._lock(actor_id):
            state = await self.store.get(actor_id)
            if outcome.clear_history:
                history: list[dict[str, Any]] = []
            else:
                history = trim_history(
                    [*state.history, *outcome.history_messages], self.max_history
                )
            update: dict[str, Any] = {"history": history, "updated_at": now}
            if state.active is not None and state.active.batch_id == batch.batch_id:
                update["active"] = None
            state = state.model_copy(update=update)
            await self.store.set(state)
            pending = state.pending

        telemetry.record_stage(Stage.DONE)
        telemetry.finish()
        logger.info(
            "batch_completed",
            route=outcome.route.value,
            response_length=len(outcome.response),
            duration_ms=telemetry.duration_ms,
        )
        if outcome.clear_history:
            await self._publish(
                EventType.BATCH_CLEARED,
                actor_id,
                batch.batch_id,
                discarded_count=outcome.discarded_messages,
            )
        await self._publish(
            EventType.BATCH_COMPLETE,
            actor_id,
            batch.batch_id,
            route=outcome.route.value,
            response_length=len(outcome.response),
            telemetry=telemetry.to_dict(),
        )
        await self._observe(
            batch.messages,
            "success",
            actor_id=actor_id,
            batch_id=batch.batch_id,
            response=outcome.response,
            duration_ms=telemetry.duration_ms,
            telemetry=telemetry.to_dict(),
        )
        if not pending.is_empty:
            await self._schedule(
                actor_id,
                pending.batch_id,
                ScheduleDecision(ScheduleReason.PENDING_AFTER_COMPLETION, 0.0),
            )

    async def _handle_failure(
        self,
        actor_id: str,
        batch: BatchState,
        error: str,
        telemetry: BatchTelemetry,
    ) -> None:
        now = now_ms()
        async with self._lock(actor_id):
            state = await self.store.get(actor_id)
            active = state.active
            if active is None or active.batch_id != batch.batch_id:
                logger.warning("batch_failure_for_replaced_batch", error=error)
                return

            if should_retry(active, self.retry_config):
                retried, delay_seconds = mark_for_retry(active, error, self.retry_config, now)
                await self.store.set(
                    state.model_copy(update={"active": retried, "updated_at": now})
                )
                failed: BatchState | None = None
            else:
                failed = active.model_copy(
                    update={
                        "status": BatchStatus.FAILED,
                        "retry_errors": [
                            *active.retry_errors,
                            RetryErrorRecord(timestamp=now, message=error),
                        ],
                    }
                )
                state = clear_active(state, now)
                await self.store.set(state)
            pending = state.pending

        if failed is None:
            telemetry.record_stage(
                Stage.RETRY_SCHEDULED,
                retry_count=retried.retry_count,
                delay_seconds=delay_seconds,
            )
            logger.warning(
                "batch_retry_scheduled",
                retry_count=retried.retry_count,
                delay_seconds=delay_seconds,
                error=error,
            )
            await self._publish(
                EventType.BATCH_RETRY_SCHEDULED,
                actor_id,
                batch.batch_id,
                retry_count=retried.retry_count,
                delay_seconds=delay_seconds,
                error=error,
            )
            await self._schedule(
                actor_id,
                batch.batch_id,
                ScheduleDecision(ScheduleReason.RETRY, delay_seconds),
            )
            return

        telemetry.record_stage(Stage.FAILED, retry_count=failed.retry_count)
        logger.error(
            "batch_failed_permanently",
            retry_count=failed.retry_count,
            dropped_messages=len(failed.messages),
            error=error,
        )
        await self._publish(
            EventType.BATCH_FAILED,
            actor_id,
            batch.batch_id,
            retry_count=failed.retry_count,
            error=error,
        )
        if await self.notify_user_of_failure(failed, error):
            telemetry.record_stage(Stage.NOTIFIED)
        telemetry.finish()
        await self._observe(
            failed.messages,
            "error",
            actor_id=actor_id,
            batch_id=batch.batch_id,
            error=error,
            duration_ms=telemetry.duration_ms,
            telemetry=telemetry.to_dict(),
        )
        if not pending.is_empty:
            await self._schedule(
                actor_id,
                pending.batch_id,
                ScheduleDecision(ScheduleReason.PENDING_AFTER_COMPLETION, 0.0),
            )

    def failure_text(self, batch: BatchState, error: str) -> str:
        """User-facing failure notice; admins also get recent errors."""
        user_id = batch.messages[0].user_id if batch.messages else None
        if user_id is not None and str(user_id) in self.admin_user_ids:
            return f"{FAILURE_MESSAGE}\n\nDebug: {recent_error_summary(batch, error)}"
        return FAILURE_MESSAGE

    async def notify_user_of_failure(self, batch: BatchState, error: str) -> bool:
        """Deliver the failure notice. Never raises; returns whether it was sent."""
        if not batch.messages:
            return False
        ctx = batch.messages[0].original_context
        try:
            await self.processor.deliver(ctx, batch.message_ref, self.failure_text(batch, error))
        except Exception as e:
            logger.error("batch_failure_notification_failed", error=str(e))
            return False
        return True

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def recover_all(self) -> int:
        """Re-arm timers for every actor with outstanding work.

        Called on startup so that work stranded by a restart is picked up
        even if its timer row was lost.

        Returns:
            Number of actors rescheduled.
        """
        now = now_ms()
        recovered = 0
        for actor_id in await self.store.list_actor_ids():
            state = await self.store.get(actor_id)
            active = state.active
            if active is not None:
                if active.awaiting_retry:
                    delay = max(0, math.ceil((active.next_retry_at - now) / 1000))
                else:
                    delay = self.batch_config.immediate_delay_seconds
                batch_id = active.batch_id
            elif not state.pending.is_empty:
                delay = self.batch_config.immediate_delay_seconds
                batch_id = state.pending.batch_id
            else:
                continue
            await self._schedule(
                actor_id, batch_id, ScheduleDecision(ScheduleReason.RECOVERY, delay)
            )
            recovered += 1
        logger.info("batch_recovery_complete", actors_rescheduled=recovered)
        return recovered

    async def get_state(self, actor_id: str) -> ActorState:
        return await self.store.get(actor_id)

    async def drain(self) -> None:
        """Wait for in-process fallback fires to finish."""
        while self._fallback_tasks:
            await asyncio.gather(*list(self._fallback_tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._fallback_tasks):
            task.cancel()
        await asyncio.gather(*list(self._fallback_tasks), return_exceptions=True)
        self._fallback_tasks.clear()
