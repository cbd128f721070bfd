from __future__ import annotations

import threading
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

import structlog

NOTIFICATION_EVENT = "notification"

logger = structlog.get_logger(__name__)

Listener = Callable[[str, dict[str, Any]], None]


class Notifier(Protocol):
    def broadcast(self, event: str, payload: dict[str, Any]) -> None:
        ...


class BroadcastNotifier:
    """In-process fan-out of events to subscribed listeners.

    Delivery is best effort: a listener that raises is logged and skipped,
    and ``broadcast`` itself never raises.
    """

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def broadcast(self, event: str, payload: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        logger.info("notification.broadcast", event_name=event, listeners=len(listeners), **payload)
        for listener in listeners:
            try:
                listener(event, payload)
            except Exception:
                logger.exception("notification.listener_failed", event_name=event)


def notify(notifier: Notifier | None, message: str) -> None:
    """Emit a ``notification`` event without letting failures reach the caller."""
    if notifier is None:
        return
    payload = {"message": message, "time": datetime.now(timezone.utc).isoformat()}
    try:
        notifier.broadcast(NOTIFICATION_EVENT, payload)
    except Exception:
        logger.exception("notification.failed", message=message)
