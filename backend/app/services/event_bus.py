"""
Same-process publish/subscribe for page-level events.

Event names follow the page conventions: "app:resize", "app:escape",
"app:swipe", "app:scroll-intersect", "app:ready", "app:error",
"form:success", "form:error", "performance:metric".

Delivery is synchronous: publish() returns after every subscriber has run.
A subscriber that raises is logged and skipped; the remaining subscribers
still receive the event.
"""

import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

APP_RESIZE = "app:resize"
APP_ESCAPE = "app:escape"
APP_SWIPE = "app:swipe"
APP_SCROLL_INTERSECT = "app:scroll-intersect"
APP_READY = "app:ready"
APP_ERROR = "app:error"
FORM_SUCCESS = "form:success"
FORM_ERROR = "form:error"
PERFORMANCE_METRIC = "performance:metric"

Handler = Callable[[Dict[str, Any]], None]


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Handler]] = defaultdict(list)

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register ``handler`` for ``event``. Returns an unsubscribe callable."""
        self._subscribers[event].append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers[event]:
                self._subscribers[event].remove(handler)

        return unsubscribe

    def publish(self, event: str, payload: Dict[str, Any] | None = None) -> int:
        """Dispatch ``event`` to its subscribers. Returns how many were called."""
        payload = payload or {}
        handlers = list(self._subscribers.get(event, ()))
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(f"Subscriber for '{event}' failed")
        return len(handlers)

    def clear(self) -> None:
        self._subscribers.clear()
