"""Named events exchanged between the core and its collaborators."""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Callable

logger = logging.getLogger(__name__)

MODS_ENABLED = "mods-enabled"
MODS_REMOVED = "mods-removed"
START_DOWNLOAD = "start-download"
REMOVE_DOWNLOAD = "remove-download"
DISABLE_DEPENDENTS = "disable-dependents"
RETRIEVE_CATEGORIES = "retrieve-categories"
CHECK_MODS_VERSION_COMPLETE = "check-mods-version-complete"
NOTIFICATION = "notification"

Handler = Callable[..., None]


@dataclass
class Notification:
    """A user facing message."""

    type: str  # info, success, warning, error, global
    message: str
    title: str = ""
    id: str | None = None
    display_ms: int | None = None


class EventBus:
    """
    Synchronous publish/subscribe.

    Each emit reaches every handler at most once. A failing handler is
    logged and does not affect the emitter or other handlers.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._lock = threading.Lock()

    def on(self, event: str, handler: Handler) -> None:
        with self._lock:
            self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        with self._lock:
            if handler in self._handlers.get(event, []):
                self._handlers[event].remove(handler)

    def emit(self, event: str, *args: Any) -> int:
        """Deliver an event. Returns the number of handlers called."""
        with self._lock:
            handlers = list(self._handlers.get(event, []))
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logger.exception("Handler for %r failed", event)
        return len(handlers)

    def notify(self, notification: Notification) -> None:
        self.emit(NOTIFICATION, notification)
