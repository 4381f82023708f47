"""Pure state transitions for the two-slot batch queue.

Each actor holds at most one ``active`` batch (being executed or awaiting a
retry) and one ``pending`` batch (collecting new arrivals). The functions in
this module never mutate their inputs; they return updated copies that the
coordinator writes back to the state store in a single ``set``.
"""

from uuid import uuid4

from batching.types import (
    ActorState,
    BatchConfig,
    BatchState,
    BatchStatus,
    PendingMessage,
    ScheduleDecision,
    ScheduleReason,
    now_ms,
)

CLEAR_COMMANDS = frozenset({"/clear", "/reset"})


def create_initial_batch_state() -> BatchState:
    """A fresh, empty pending slot."""
    return BatchState()


def new_batch_id() -> str:
    return uuid4().hex


def is_duplicate_message(request_id: str, *batches: BatchState | None) -> bool:
    """True if ``request_id`` already sits in any of the given batches."""
    for batch in batches:
        if batch is None:
            continue
        if any(message.request_id == request_id for message in batch.messages):
            return True
    return False


def add_message_to_batch(
    batch: BatchState,
    message: PendingMessage,
    now: int | None = None,
) -> BatchState:
    """Append ``message`` to a pending batch.

    The first message of an idle batch moves it to ``collecting``, stamps
    ``batch_started_at`` and assigns the batch id. Every message stamps
    ``last_message_at``.
    """
    now = now if now is not None else now_ms()
    update: dict[str, object] = {
        "messages": [*batch.messages, message],
        "last_message_at": now,
    }
    if batch.status == BatchStatus.IDLE or batch.batch_id is None:
        update["status"] = BatchStatus.COLLECTING
        update["batch_started_at"] = now
        update["batch_id"] = batch.batch_id or new_batch_id()
    return batch.model_copy(update=update, deep=True)


def decide_schedule(
    pending: BatchState,
    active: BatchState | None,
    config: BatchConfig,
    now: int | None = None,
    recovered_from_stuck: bool = False,
) -> ScheduleDecision:
    """Pick the timer request for a pending batch that just gained a message.

    Rules, first match wins:
    1. The batch hit ``max_messages`` or outlived ``max_window_ms``: flush now.
    2. A stuck active batch was just reclaimed: schedule promptly.
    3. First message and nothing in flight: schedule promptly.
    4. Nothing in flight but an older collecting batch exists (its timer was
       lost, e.g. across a restart): schedule promptly to self-heal.
    5. Otherwise wait one coalescing window.
    """
    now = now if now is not None else now_ms()
    count = len(pending.messages)

    if count >= config.max_messages:
        return ScheduleDecision(ScheduleReason.MAX_MESSAGES, 0.0)

    started = pending.batch_started_at if pending.batch_started_at is not None else now
    if now - started > config.max_window_ms:
        return ScheduleDecision(ScheduleReason.MAX_WINDOW, 0.0)

    if recovered_from_stuck and count > 0:
        return ScheduleDecision(
            ScheduleReason.RECOVERED_FROM_STUCK, config.immediate_delay_seconds
        )

    if active is None and count == 1:
        return ScheduleDecision(
            ScheduleReason.FIRST_MESSAGE, config.immediate_delay_seconds
        )

    if active is None and count > 1 and pending.status == BatchStatus.COLLECTING:
        return ScheduleDecision(ScheduleReason.ORPHANED, config.immediate_delay_seconds)

    return ScheduleDecision(ScheduleReason.COALESCING, config.window_ms / 1000)


def combine_batch_messages(messages: list[PendingMessage]) -> str:
    """Join message texts in arrival order, one per line."""
    return "\n".join(message.text for message in messages)


def parse_control_command(text: str) -> str | None:
    """Return the normalized clear command if ``text`` starts with one.

    Only the first whitespace-separated token counts, compared
    case-insensitively. A ``@botname`` suffix (``/clear@my_bot``) is ignored.
    """
    tokens = text.strip().split()
    if not tokens:
        return None
    command = tokens[0].lower().split("@", 1)[0]
    return command if command in CLEAR_COMMANDS else None


def split_clear_batch(
    batch: BatchState,
) -> tuple[PendingMessage | None, list[PendingMessage]]:
    """Separate a leading clear command from the rest of the batch.

    Returns:
        ``(command_message, discarded)`` when the first message is a clear
        command; ``(None, [])`` otherwise.
    """
    if not batch.messages:
        return None, []
    first = batch.messages[0]
    if parse_control_command(first.text) is None:
        return None, []
    return first, list(batch.messages[1:])


def promote_pending(state: ActorState, now: int | None = None) -> ActorState:
    """Move ``pending`` into ``active`` and open a fresh pending slot.

    The promoted copy is marked ``processing`` with a fresh heartbeat. The
    result is meant to be written with a single ``set`` so no reader ever
    sees the messages in both slots or in neither.
    """
    now = now if now is not None else now_ms()
    active = state.pending.model_copy(
        update={"status": BatchStatus.PROCESSING, "last_heartbeat": now},
        deep=True,
    )
    return state.model_copy(
        update={
            "active": active,
            "pending": create_initial_batch_state(),
            "updated_at": now,
        }
    )


def resume_active(state: ActorState, now: int | None = None) -> ActorState:
    """Put a batch that was awaiting retry back into ``processing``."""
    now = now if now is not None else now_ms()
    if state.active is None:
        return state
    active = state.active.model_copy(
        update={
            "status": BatchStatus.PROCESSING,
            "last_heartbeat": now,
            "next_retry_at": None,
        }
    )
    return state.model_copy(update={"active": active, "updated_at": now})


def clear_active(state: ActorState, now: int | None = None) -> ActorState:
    """Drop the active slot."""
    now = now if now is not None else now_ms()
    return state.model_copy(update={"active": None, "updated_at": now})
