"""Durable timer service backed by the SQLite timer store.

``DurableTimer`` is the ``Timer`` the batch coordinator schedules through: it
only writes rows. ``TimerWorker`` is the background loop that claims due rows
and dispatches them to registered handlers by name. Because rows survive a
restart, a fire scheduled before a crash is still delivered afterwards.

Usage:
    >>> store = SQLiteTimerStore("./data/actors.db")
    >>> await store.init()
    >>> timer = DurableTimer(store)
    >>> worker = TimerWorker(store, poll_interval_seconds=0.5)
    >>> worker.register("on_batch_timer", coordinator.handle_timer)
    >>> task = worker.start()
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from batching.ports import SchedulingError
from batching.types import now_ms
from models.database import SQLiteTimerStore, TimerRecord

logger = structlog.get_logger(__name__)

TimerHandler = Callable[[dict[str, Any]], Awaitable[None]]


class DurableTimer:
    """``Timer`` implementation that persists fires to SQLite.

    The timer key is the payload's ``timer_key`` when set, otherwise its
    ``batch_id``, so fires for different batches of the same actor never
    collapse into one row.
    """

    def __init__(self, store: SQLiteTimerStore) -> None:
        self.store = store

    async def schedule(
        self,
        delay_seconds: float,
        handler_name: str,
        payload: dict[str, Any],
    ) -> None:
        """Persist a fire ``delay_seconds`` from now.

        Raises:
            SchedulingError: If the row could not be written.
        """
        actor_id = str(payload.get("actor_id", ""))
        timer_key = str(payload.get("timer_key") or payload.get("batch_id") or "")
        fire_at = now_ms() + int(max(delay_seconds, 0) * 1000)
        try:
            await self.store.schedule(
                actor_id=actor_id,
                handler=handler_name,
                payload=payload,
                fire_at=fire_at,
                timer_key=timer_key,
            )
        except Exception as e:
            logger.error(
                "timer_schedule_failed",
                actor_id=actor_id,
                handler=handler_name,
                error=str(e),
            )
            raise SchedulingError(str(e)) from e


class TimerWorker:
    """Polls the timer store and dispatches due fires.

    At most one dispatch per ``(actor_id, handler, timer_key)`` runs at a
    time. A due row whose key is still in flight is written back one poll
    interval later instead of being dispatched twice.

    Attributes:
        store: Timer rows.
        poll_interval_seconds: Sleep between polls.
    """

    def __init__(
        self,
        store: SQLiteTimerStore,
        poll_interval_seconds: float = 0.5,
    ) -> None:
        self.store = store
        self.poll_interval_seconds = poll_interval_seconds
        self._handlers: dict[str, TimerHandler] = {}
        self._in_flight: set[tuple[str, str, str]] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._loop_task: asyncio.Task[None] | None = None

    def register(self, handler_name: str, handler: TimerHandler) -> None:
        """Bind a handler name to a coroutine function taking the payload."""
        self._handlers[handler_name] = handler

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def run_once(self, now: int | None = None) -> int:
        """Claim due fires and start their handlers.

        Returns:
            Number of fires dispatched in this pass.
        """
        now = now if now is not None else now_ms()
        records = await self.store.claim_due(now)
        dispatched = 0
        for record in records:
            key = (record.actor_id, record.handler, record.timer_key)
            handler = self._handlers.get(record.handler)
            if handler is None:
                logger.error(
                    "timer_handler_not_registered",
                    handler=record.handler,
                    actor_id=record.actor_id,
                )
                continue
            if key in self._in_flight:
                await self.store.schedule(
                    actor_id=record.actor_id,
                    handler=record.handler,
                    payload=record.payload,
                    fire_at=now + int(self.poll_interval_seconds * 1000),
                    timer_key=record.timer_key,
                )
                logger.debug("timer_deferred_in_flight", actor_id=record.actor_id)
                continue

            self._in_flight.add(key)
            task = asyncio.create_task(
                self._dispatch(key, handler, record),
                name=f"timer_{record.handler}_{record.actor_id}",
            )
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            dispatched += 1
        return dispatched

    async def _dispatch(
        self,
        key: tuple[str, str, str],
        handler: TimerHandler,
        record: TimerRecord,
    ) -> None:
        try:
            await handler(record.payload)
        except Exception as e:
            logger.error(
                "timer_handler_failed",
                handler=record.handler,
                actor_id=record.actor_id,
                error=str(e),
            )
        finally:
            self._in_flight.discard(key)

    async def drain(self) -> None:
        """Wait for every in-flight dispatch to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def start(self) -> asyncio.Task[None]:
        """Start the polling loop as a background task."""

        async def _loop() -> None:
            logger.info(
                "timer_worker_started",
                poll_interval_seconds=self.poll_interval_seconds,
            )
            while True:
                try:
                    await asyncio.sleep(self.poll_interval_seconds)
                    await self.run_once()
                except asyncio.CancelledError:
                    logger.info("timer_worker_stopped")
                    return
                except Exception as e:
                    logger.error("timer_worker_error", error=str(e))

        self._loop_task = asyncio.create_task(_loop(), name="timer_worker")
        return self._loop_task

    async def stop(self) -> None:
        """Cancel the polling loop and any running dispatches."""
        tasks = [t for t in (self._loop_task, *self._tasks) if t is not None]
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except (asyncio.CancelledError, Exception) as e:
                if not isinstance(e, asyncio.CancelledError):
                    logger.error("timer_task_cancel_failed", error=str(e))
        self._loop_task = None
        self._tasks.clear()
        self._in_flight.clear()
