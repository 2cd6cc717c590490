"""
ceplatform/events/publisher.py
Completion event publishing

Events are emitted after the progression transaction commits. Subscribers
run as background tasks, so publish returns without waiting for them; a
failing subscriber is logged and never rolls back state.

Guarantees:
- Deterministic serialization (sort_keys=True, compact separators)
- Every event carries event_sequence and event_hash so consumers can
  deduplicate
"""
import abc
import asyncio
import hashlib
import json
import logging
from datetime import date, datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Union

logger = logging.getLogger(__name__)


UNIT_PASSED = "unit.passed"
FINAL_EXAM_PASSED = "final_exam.passed"
FINAL_EXAM_FAILED = "final_exam.failed"
COURSE_COMPLETED = "course.completed"
ENROLLMENT_RESET = "enrollment.reset"

EVENT_TYPES = {UNIT_PASSED, FINAL_EXAM_PASSED, FINAL_EXAM_FAILED, COURSE_COMPLETED, ENROLLMENT_RESET}

EventHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def _default(value):
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class EventPublisher(abc.ABC):
    """Abstract completion event sink."""

    @abc.abstractmethod
    async def publish(self, event_type: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abc.abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    def _serialize_message(self, message: Dict[str, Any]) -> str:
        return json.dumps(message, sort_keys=True, separators=(',', ':'), default=_default)

    def _compute_message_hash(self, message: Dict[str, Any]) -> str:
        serialized = self._serialize_message(message)
        return hashlib.sha256(serialized.encode()).hexdigest()


class InMemoryEventPublisher(EventPublisher):
    """
    In-process publisher.

    Subscribers are plain callables or coroutine functions registered per
    event type ("*" for all), each run in its own task. `drain()` waits
    for the ones still running. Published events are kept in `history` so
    tests and the CLI can inspect them.
    """

    def __init__(self, keep_history: int = 1000):
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._sequence = 0
        self._lock = asyncio.Lock()
        self.keep_history = keep_history
        self.history: List[Dict[str, Any]] = []
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_type: str, handler: EventHandler) -> None:
        if event_type != "*" and event_type not in EVENT_TYPES:
            raise ValueError(f"Unknown event type: {event_type}")
        self._handlers.setdefault(event_type, []).append(handler)

    def events_of(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self.history if e["event_type"] == event_type]

    async def publish(self, event_type: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        async with self._lock:
            self._sequence += 1
            message = {
                "event_type": event_type,
                "event_sequence": self._sequence,
                "payload": json.loads(self._serialize_message(payload)),
            }
            message["event_hash"] = self._compute_message_hash(message)

            self.history.append(message)
            if len(self.history) > self.keep_history:
                del self.history[: len(self.history) - self.keep_history]

            handlers = list(self._handlers.get(event_type, [])) + list(self._handlers.get("*", []))

        for handler in handlers:
            task = asyncio.create_task(self._run_handler(handler, message))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        logger.info(f"[EVENT] {event_type} seq={message['event_sequence']} hash={message['event_hash'][:12]}")
        return message

    async def _run_handler(self, handler: EventHandler, message: Dict[str, Any]) -> None:
        try:
            outcome = handler(message)
            if asyncio.iscoroutine(outcome):
                await outcome
        except Exception as e:
            logger.error(
                f"[EVENT HANDLER ERROR] {message['event_type']} seq={message['event_sequence']}: {e}"
            )

    async def drain(self) -> None:
        """Wait for every dispatched handler to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def close(self) -> None:
        await self.drain()
        async with self._lock:
            self._handlers.clear()
