"""
scheduler/handlers.py — Handler Registry

Maps handler names to task bodies. A TaskDescriptor names its handler; the
TaskTimer resolves it here when the alarm fires. No dynamic imports: only
handlers registered explicitly by the application can run.

Usage:
    handlers = HandlerRegistry()
    handlers.register("send_digest", send_digest)

    handler = handlers.get("send_digest")
"""

from __future__ import annotations

import threading
from typing import Optional

from taskcadence.exceptions import HandlerNotFoundError
from taskcadence.scheduler.types import TaskHandler


class HandlerRegistry:
    """Name → TaskHandler lookup table."""

    def __init__(self) -> None:
        self._handlers: dict[str, TaskHandler] = {}
        self._lock = threading.Lock()

    # ── Write ─────────────────────────────────────────────────────────────────

    def register(self, name: str, handler: TaskHandler) -> TaskHandler:
        """Register a handler. Raises ValueError on duplicate or empty name."""
        if not name or not name.strip():
            raise ValueError("Handler name must be a non-empty string.")
        if not callable(handler):
            raise ValueError(f"Handler '{name}' must be callable, got {type(handler).__name__}.")
        with self._lock:
            if name in self._handlers:
                raise ValueError(
                    f"Handler '{name}' is already registered. "
                    f"Handler names must be unique per registry."
                )
            self._handlers[name] = handler
        return handler

    def unregister(self, name: str) -> None:
        with self._lock:
            self._handlers.pop(name, None)

    # ── Read ──────────────────────────────────────────────────────────────────

    def get(self, name: str) -> TaskHandler:
        """Return the handler. Raises HandlerNotFoundError if not found."""
        with self._lock:
            handler = self._handlers.get(name)
            if handler is None:
                available = sorted(self._handlers)
                raise HandlerNotFoundError(
                    f"Handler '{name}' is not registered. "
                    f"Available handlers: {available}"
                )
            return handler

    def get_or_none(self, name: str) -> Optional[TaskHandler]:
        with self._lock:
            return self._handlers.get(name)

    def is_registered(self, name: str) -> bool:
        with self._lock:
            return name in self._handlers

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._handlers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def __repr__(self) -> str:
        return f"<HandlerRegistry handlers={self.names()}>"
