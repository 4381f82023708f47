"""In-memory collaborators for tests and embedding.

These mirror the SQLite stores' contracts without touching disk. The state
store hands out deep copies so callers cannot mutate stored state in place,
matching the whole-document semantics of the durable store.
"""

from dataclasses import dataclass, field
from typing import Any

from batching.ports import SchedulingError
from batching.types import ActorState


class InMemoryActorStateStore:
    """Dict-backed ``ActorStateStore``."""

    def __init__(self) -> None:
        self._states: dict[str, ActorState] = {}
        self.set_calls = 0

    async def get(self, actor_id: str) -> ActorState:
        state = self._states.get(actor_id)
        if state is None:
            return ActorState(actor_id=actor_id)
        return state.model_copy(deep=True)

    async def set(self, state: ActorState) -> None:
        self.set_calls += 1
        self._states[state.actor_id] = state.model_copy(deep=True)

    async def list_actor_ids(self) -> list[str]:
        return list(self._states)


@dataclass
class ScheduledCall:
    """A single ``Timer.schedule`` invocation."""

    delay_seconds: float
    handler_name: str
    payload: dict[str, Any] = field(default_factory=dict)


class InMemoryTimer:
    """Recording ``Timer`` that never fires on its own.

    Tests drive fires explicitly through the coordinator. Set ``fail_with``
    to make every ``schedule`` raise ``SchedulingError``.
    """

    def __init__(self, fail_with: str | None = None) -> None:
        self.calls: list[ScheduledCall] = []
        self.fail_with = fail_with

    async def schedule(
        self,
        delay_seconds: float,
        handler_name: str,
        payload: dict[str, Any],
    ) -> None:
        if self.fail_with is not None:
            raise SchedulingError(self.fail_with)
        self.calls.append(ScheduledCall(delay_seconds, handler_name, dict(payload)))

    @property
    def last_call(self) -> ScheduledCall | None:
        return self.calls[-1] if self.calls else None

    def reset(self) -> None:
        self.calls.clear()


class InMemoryObservabilitySink:
    """Keeps the latest record per event id plus the full upsert log."""

    def __init__(self) -> None:
        self.events: dict[str, dict[str, Any]] = {}
        self.history: list[tuple[str, str]] = []

    async def upsert_event(self, event_id: str, status: str, **fields: Any) -> None:
        record = self.events.setdefault(event_id, {})
        record.update(fields)
        record["status"] = status
        self.history.append((event_id, status))
