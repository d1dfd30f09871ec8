"""
Structured import-pipeline events.

Pipeline stages call :func:`emit` with an event name and keyword fields. Every
event is written to the ``app.events`` logger (fields are attached through
``extra`` and rendered as ``key=value`` pairs) and handed to any subscribed
listeners. Listener failures are logged and never propagate into the pipeline.
"""
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List

logger = logging.getLogger("app.events")

EventListener = Callable[[str, Dict[str, Any]], None]


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[EventListener] = []

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener and return a callable that removes it again."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, name: str, **fields: Any) -> None:
        rendered = " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        logger.info(f"{name} {rendered}".rstrip(), extra={"event": name, "event_fields": fields})

        with self._lock:
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(name, dict(fields))
            except Exception as exc:
                logger.warning(f"Event listener failed for {name}: {exc}")


event_bus = EventBus()


def emit(name: str, **fields: Any) -> None:
    event_bus.emit(name, **fields)


def subscribe(listener: EventListener) -> Callable[[], None]:
    return event_bus.subscribe(listener)
