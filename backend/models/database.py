"""SQLite-backed persistence using aiosqlite.

This module provides the durable implementations of the batch queue's
collaborators. Every store opens a connection per call and commits before
returning, so concurrent coroutines never share a cursor.

Tables:
    actor_state: One JSON document per actor (the two batch slots plus history).
    timers: Scheduled handler fires, one row per (actor, handler, key).
    observability_events: Per-message outcome records keyed by event id.

Error policy:
    The actor-state and timer stores back the core state machine, so their
    write errors propagate to the caller. The observability store is
    fire-and-forget: it logs and swallows errors.

Usage:
    >>> from models.database import SQLiteActorStateStore
    >>> store = SQLiteActorStateStore("./data/actors.db")
    >>> await store.init()
    >>> state = await store.get("chat_42")
"""

import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from uuid import uuid4

import aiosqlite
import structlog

from batching.types import ActorState, now_ms

logger = structlog.get_logger(__name__)


def _ensure_parent_dir(db_path: str) -> None:
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)


class SQLiteActorStateStore:
    """Async SQLite store for per-actor batch state.

    State is written by whole-document replacement: ``set`` serialises the
    entire ``ActorState`` and replaces the row in one statement, so readers
    never observe a half-applied transition.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create the ``actor_state`` table if it does not exist."""
        _ensure_parent_dir(self.db_path)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS actor_state (
                        actor_id TEXT PRIMARY KEY,
                        state TEXT NOT NULL,
                        updated_at INTEGER NOT NULL
                    )
                """)
                await db.commit()
            logger.info("actor_state_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("actor_state_store_init_failed", db_path=self.db_path, error=str(e))
            raise

    async def get(self, actor_id: str) -> ActorState:
        """Load an actor's state, or a fresh state if none is stored."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT state FROM actor_state WHERE actor_id = ?",
                (actor_id,),
            )
            row = await cursor.fetchone()
        if row is None:
            return ActorState(actor_id=actor_id)
        return ActorState.model_validate_json(row[0])

    async def set(self, state: ActorState) -> None:
        """Replace the actor's stored state."""
        updated_at = state.updated_at or now_ms()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute(
                    """
                    INSERT OR REPLACE INTO actor_state (actor_id, state, updated_at)
                    VALUES (?, ?, ?)
                    """,
                    (state.actor_id, state.model_dump_json(), updated_at),
                )
                await db.commit()
        except Exception as e:
            logger.error("actor_state_save_failed", actor_id=state.actor_id, error=str(e))
            raise

    async def list_actor_ids(self) -> list[str]:
        """Return every actor with stored state, most recently updated first."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT actor_id FROM actor_state ORDER BY updated_at DESC"
            )
            rows = await cursor.fetchall()
        return [row[0] for row in rows]


@dataclass
class TimerRecord:
    """One scheduled handler fire."""

    timer_id: str
    actor_id: str
    handler: str
    timer_key: str
    fire_at: int
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: int = 0


class SQLiteTimerStore:
    """Async SQLite store of scheduled timer fires.

    Rows are unique per ``(actor_id, handler, timer_key)``. Scheduling an
    existing key keeps the earlier ``fire_at`` and refreshes the payload, so
    a burst of messages never postpones a fire that is already due sooner.
    Due rows are claimed under a write lock taken before they are read
    (``BEGIN IMMEDIATE``), so a concurrent ``schedule`` either lands before
    the claim and is returned by it, or waits and creates a fresh row.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create the ``timers`` table and its due-time index."""
        _ensure_parent_dir(self.db_path)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS timers (
                        timer_id TEXT PRIMARY KEY,
                        actor_id TEXT NOT NULL,
                        handler TEXT NOT NULL,
                        timer_key TEXT NOT NULL DEFAULT '',
                        payload TEXT NOT NULL,
                        fire_at INTEGER NOT NULL,
                        created_at INTEGER NOT NULL,
                        UNIQUE (actor_id, handler, timer_key)
                    )
                """)
                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_timers_fire_at
                    ON timers(fire_at)
                """)
                await db.commit()
            logger.info("timer_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("timer_store_init_failed", db_path=self.db_path, error=str(e))
            raise

    async def schedule(
        self,
        actor_id: str,
        handler: str,
        payload: dict[str, Any],
        fire_at: int,
        timer_key: str = "",
    ) -> None:
        """Insert a fire, or pull an existing one for the same key earlier.

        Args:
            actor_id: Actor the fire belongs to.
            handler: Registered handler name.
            payload: JSON-serialisable handler payload.
            fire_at: Earliest fire time in epoch milliseconds.
            timer_key: Distinguishes fires for the same actor and handler.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO timers
                    (timer_id, actor_id, handler, timer_key, payload, fire_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (actor_id, handler, timer_key) DO UPDATE SET
                    fire_at = MIN(timers.fire_at, excluded.fire_at),
                    payload = excluded.payload
                """,
                (
                    uuid4().hex,
                    actor_id,
                    handler,
                    timer_key,
                    json.dumps(payload),
                    fire_at,
                    now_ms(),
                ),
            )
            await db.commit()
        logger.debug(
            "timer_stored",
            actor_id=actor_id,
            handler=handler,
            timer_key=timer_key,
            fire_at=fire_at,
        )

    async def claim_due(self, now: int | None = None, limit: int = 100) -> list[TimerRecord]:
        """Remove and return fires whose time has come, earliest first."""
        now = now if now is not None else now_ms()
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            cursor = await db.execute(
                """
                SELECT * FROM timers
                WHERE fire_at <= ?
                ORDER BY fire_at ASC
                LIMIT ?
                """,
                (now, limit),
            )
            rows = await cursor.fetchall()
            records = [self._row_to_record(row) for row in rows]
            if records:
                await db.executemany(
                    "DELETE FROM timers WHERE timer_id = ?",
                    [(record.timer_id,) for record in records],
                )
            await db.commit()
        return records

    async def list_timers(self, actor_id: str | None = None) -> list[TimerRecord]:
        """List stored fires, optionally for one actor."""
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            if actor_id is None:
                cursor = await db.execute("SELECT * FROM timers ORDER BY fire_at ASC")
            else:
                cursor = await db.execute(
                    "SELECT * FROM timers WHERE actor_id = ? ORDER BY fire_at ASC",
                    (actor_id,),
                )
            rows = await cursor.fetchall()
        return [self._row_to_record(row) for row in rows]

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> TimerRecord:
        try:
            payload = json.loads(row["payload"])
        except json.JSONDecodeError:
            payload = {}
        return TimerRecord(
            timer_id=row["timer_id"],
            actor_id=row["actor_id"],
            handler=row["handler"],
            timer_key=row["timer_key"],
            fire_at=row["fire_at"],
            payload=payload,
            created_at=row["created_at"],
        )


class ObservabilityStore:
    """Async SQLite store for per-message outcome records.

    Each record is keyed by the event id carried on the inbound message and
    is upserted as the batch moves through ``processing`` to ``success`` or
    ``error``. Extra fields are merged into the stored JSON ``data``. All
    methods log and swallow errors; observability never blocks delivery.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path

    async def init(self) -> None:
        """Create the ``observability_events`` table if it does not exist."""
        _ensure_parent_dir(self.db_path)
        try:
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS observability_events (
                        event_id TEXT PRIMARY KEY,
                        actor_id TEXT,
                        status TEXT NOT NULL,
                        data TEXT,
                        created_at REAL NOT NULL,
                        updated_at REAL NOT NULL
                    )
                """)
                await db.commit()
            logger.info("observability_store_initialized", db_path=self.db_path)
        except Exception as e:
            logger.error("observability_store_init_failed", db_path=self.db_path, error=str(e))
            raise

    async def upsert_event(self, event_id: str, status: str, **fields: Any) -> None:
        """Create or update the record for ``event_id``.

        Args:
            event_id: External correlation id.
            status: ``processing``, ``success`` or ``error``.
            **fields: Extra data merged into the record (``actor_id`` is
                stored in its own column).
        """
        actor_id = fields.pop("actor_id", None)
        now = time.time()
        try:
            async with aiosqlite.connect(self.db_path) as db:
                cursor = await db.execute(
                    "SELECT data FROM observability_events WHERE event_id = ?",
                    (event_id,),
                )
                row = await cursor.fetchone()
                data: dict[str, Any] = {}
                if row is not None and row[0]:
                    try:
                        data = json.loads(row[0])
                    except json.JSONDecodeError:
                        data = {}
                data.update(fields)
                await db.execute(
                    """
                    INSERT INTO observability_events
                        (event_id, actor_id, status, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    ON CONFLICT (event_id) DO UPDATE SET
                        actor_id = COALESCE(excluded.actor_id, observability_events.actor_id),
                        status = excluded.status,
                        data = excluded.data,
                        updated_at = excluded.updated_at
                    """,
                    (event_id, actor_id, status, json.dumps(data, default=str), now, now),
                )
                await db.commit()
            logger.debug("observability_event_upserted", event_id=event_id, status=status)
        except Exception as e:
            logger.error(
                "observability_event_upsert_failed",
                event_id=event_id,
                status=status,
                error=str(e),
            )

    async def get_event(self, event_id: str) -> dict[str, Any] | None:
        """Retrieve one record, or None if missing or unreadable."""
        try:
            async with aiosqlite.connect(self.db_path) as db:
                db.row_factory = aiosqlite.Row
                cursor = await db.execute(
                    "SELECT * FROM observability_events WHERE event_id = ?",
                    (event_id,),
                )
                row = await cursor.fetchone()
                if row is None:
                    return None
                result = dict(row)
                if result.get("data"):
                    try:
                        result["data"] = json.loads(result["data"])
                    except json.JSONDecodeError:
                        result["data"] = None
                return result
        except Exception as e:
            logger.error("observability_event_get_failed", event_id=event_id, error=str(e))
            return None
