# kestrel/core/events.py
import threading
from collections import defaultdict
from typing import Any, Dict, List, Type, TypeVar

E = TypeVar("E")


class Event:
    """Base class for all Events."""

    pass


class EventManager:
    """
    Per-type event queues. ``emit`` may be called from any thread;
    ``get`` drains the queue for one type.
    """

    def __init__(self):
        self._queues: Dict[Type[Any], List[Any]] = defaultdict(list)
        self._lock = threading.Lock()

    def emit(self, event: Any) -> None:
        event_type = type(event)
        with self._lock:
            self._queues[event_type].append(event)

    def get(self, event_type: Type[E]) -> List[E]:
        with self._lock:
            if event_type in self._queues:
                events = self._queues[event_type]
                self._queues[event_type] = []
                return events
        return []

    def peek(self, event_type: Type[E]) -> List[E]:
        with self._lock:
            return list(self._queues.get(event_type, ()))

    def clear_all(self) -> None:
        with self._lock:
            self._queues.clear()
