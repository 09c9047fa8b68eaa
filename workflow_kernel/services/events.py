"""
In-process event bus (``workflow_kernel.services.events``).

Synchronous fan-out in registration order.  A listener that raises is
logged with its traceback and skipped; it never breaks other listeners
or the operation that emitted the event.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any

from workflow_kernel.logging_config import get_logger

logger = get_logger("services.events")

Listener = Callable[[Any], Any]


def _key(event_name: str | Enum) -> str:
    return event_name.value if isinstance(event_name, Enum) else str(event_name)


class EventBus:
    """Event name -> ordered listeners."""

    def __init__(self, owner: str = "") -> None:
        self._owner = owner
        self._listeners: dict[str, list[Listener]] = {}

    def on(self, event_name: str | Enum, callback: Listener) -> None:
        self._listeners.setdefault(_key(event_name), []).append(callback)

    def off(self, event_name: str | Enum, callback: Listener) -> None:
        """Remove the first registration of ``callback``; unknown callbacks are ignored."""
        callbacks = self._listeners.get(_key(event_name))
        if not callbacks:
            return
        try:
            callbacks.remove(callback)
        except ValueError:
            pass

    def emit(self, event_name: str | Enum, payload: Any) -> None:
        name = _key(event_name)
        for callback in list(self._listeners.get(name, ())):
            try:
                callback(payload)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "workflow_listener_error",
                    extra={"event": name, "owner": self._owner},
                )

    def listener_count(self, event_name: str | Enum | None = None) -> int:
        if event_name is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(_key(event_name), ()))

    def clear(self) -> None:
        self._listeners.clear()
