"""
Page-level coordinator.

Builds the form session manager and the offline cache dispatcher, holds typed
references to both, and forwards page events (resize, visibility, keyboard,
swipe, scroll intersection) to whichever of them initialized.

A module whose initialization raises is logged and left as None; the rest of
the page keeps working. report_error() is the single funnel for otherwise
unhandled errors: it logs, queues an analytics event and publishes app:error.
init() installs it as the running loop's exception handler so exceptions
from callbacks and never-awaited tasks reach it; destroy() puts the previous
handler back.
"""

import asyncio
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Optional

from app.models.forms import FormSpec
from app.services.event_bus import (
    APP_ERROR,
    APP_ESCAPE,
    APP_READY,
    APP_RESIZE,
    APP_SCROLL_INTERSECT,
    APP_SWIPE,
    PERFORMANCE_METRIC,
    EventBus,
)
from app.services.form_session import MOBILE_BREAKPOINT, FormSessionManager
from app.services.offline_cache import OfflineCacheDispatcher
from app.services.offline_queue import OfflineQueue

logger = logging.getLogger(__name__)

MIN_SWIPE_DISTANCE = 50


def swipe_direction(delta_x: float, delta_y: float) -> Optional[str]:
    """Direction of a touch gesture, or None when it is too short to count."""
    if abs(delta_x) <= MIN_SWIPE_DISTANCE and abs(delta_y) <= MIN_SWIPE_DISTANCE:
        return None
    if abs(delta_x) > abs(delta_y):
        return "right" if delta_x > 0 else "left"
    return "down" if delta_y > 0 else "up"


class AppCoordinator:
    """
    Args:
        bus:              Event bus shared by every module on the page.
        forms_factory:    Builds the FormSessionManager (None disables forms).
        cache_factory:    Builds the OfflineCacheDispatcher (None disables it).
        form_specs:       Forms discovered on the page.
        client_id:        Identifier of this page for the cache dispatcher.
    """

    def __init__(
        self,
        bus: EventBus,
        forms_factory: Optional[Callable[[], FormSessionManager]] = None,
        cache_factory: Optional[Callable[[], OfflineCacheDispatcher]] = None,
        form_specs: Iterable[FormSpec] = (),
        analytics_queue: Optional[OfflineQueue] = None,
        client_id: str = "page",
    ):
        self.bus = bus
        self.analytics_queue = analytics_queue
        self.client_id = client_id
        self.forms: Optional[FormSessionManager] = None
        self.cache: Optional[OfflineCacheDispatcher] = None
        self.is_initialized = False
        self.is_visible = True
        self._forms_factory = forms_factory
        self._cache_factory = cache_factory
        self._form_specs = list(form_specs)
        self._worker_registered = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handler = None

    async def init(self) -> None:
        if self.is_initialized:
            return

        logger.info("Initializing page coordinator")
        self._install_exception_handler()
        self._initialize_forms()
        await self.register_offline_cache()

        self.is_initialized = True
        self.bus.publish(APP_READY, {"forms": self.forms is not None, "offlineCache": self.cache is not None})

    def _initialize_forms(self) -> None:
        if self._forms_factory is None:
            return
        try:
            forms = self._forms_factory()
            forms.discover(self._form_specs)
            self.forms = forms
        except Exception as e:
            logger.warning(f"Forms failed to initialize: {e}")
            self.forms = None

    async def register_offline_cache(self) -> None:
        """Install and activate the cache dispatcher once per page lifetime."""
        if self._worker_registered or self._cache_factory is None:
            return
        self._worker_registered = True

        try:
            cache = self._cache_factory()
            cache.register_client(self.client_id)
            await cache.skip_waiting()
            await cache.install()
            self.cache = cache
        except Exception as e:
            logger.warning(f"Offline cache registration failed: {e}")
            self.cache = None

    # -- page events -------------------------------------------------------

    def resize(self, width: int, height: int) -> None:
        payload = {"width": width, "height": height, "isMobile": width < MOBILE_BREAKPOINT}
        self.bus.publish(APP_RESIZE, payload)
        if self.forms is not None:
            self.forms.handle_resize(width)

    def visibility_change(self, visible: bool) -> None:
        self.is_visible = visible
        logger.debug(f"Page visibility changed: {'visible' if visible else 'hidden'}")

    def keydown(self, key: str) -> None:
        if key == "Escape":
            self.bus.publish(APP_ESCAPE, {})

    def touch(self, start: tuple[float, float], end: tuple[float, float]) -> Optional[str]:
        """Handle a touchstart/touchend pair; publishes app:swipe for real swipes."""
        delta_x = end[0] - start[0]
        delta_y = end[1] - start[1]
        direction = swipe_direction(delta_x, delta_y)
        if direction is not None:
            self.bus.publish(APP_SWIPE, {"direction": direction, "deltaX": delta_x, "deltaY": delta_y})
        return direction

    def scroll_intersect(self, element_id: str, is_intersecting: bool, ratio: float) -> None:
        self.bus.publish(APP_SCROLL_INTERSECT, {
            "element": element_id,
            "isIntersecting": is_intersecting,
            "ratio": ratio,
        })

    def record_metric(self, name: str, value: float, **details: Any) -> None:
        payload: Dict[str, Any] = {"name": name, "value": value, **details}
        self.bus.publish(PERFORMANCE_METRIC, payload)
        self._queue_analytics("performance_metric", payload)

    async def connectivity_restored(self) -> int:
        """Flush both offline queues through the cache dispatcher."""
        if self.cache is None:
            return 0
        delivered = await self.cache.sync("form-submission")
        delivered += await self.cache.sync("analytics-data")
        return delivered

    # -- errors ------------------------------------------------------------

    def report_error(self, error: BaseException) -> None:
        """Global handler for unhandled errors and rejected tasks."""
        logger.error(
            f"Unhandled page error: {error}",
            exc_info=(type(error), error, error.__traceback__),
        )
        self._queue_analytics("error", {
            "message": str(error),
            "errorType": type(error).__name__,
            "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__))[-2000:],
        })
        self.bus.publish(APP_ERROR, {"error": str(error), "errorType": type(error).__name__})

    def _install_exception_handler(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._previous_handler = self._loop.get_exception_handler()
        self._loop.set_exception_handler(self._handle_loop_exception)

    def _handle_loop_exception(self, loop: asyncio.AbstractEventLoop, context: Dict[str, Any]) -> None:
        error = context.get("exception")
        if error is None:
            # Warnings without an exception (e.g. a task destroyed while pending)
            if self._previous_handler is not None:
                self._previous_handler(loop, context)
            else:
                loop.default_exception_handler(context)
            return
        self.report_error(error)

    def _restore_exception_handler(self) -> None:
        if self._loop is None:
            return
        if self._loop.get_exception_handler() == self._handle_loop_exception:
            self._loop.set_exception_handler(self._previous_handler)
        self._loop = None
        self._previous_handler = None

    def _queue_analytics(self, event: str, data: Dict[str, Any]) -> None:
        if self.analytics_queue is None:
            return
        self.analytics_queue.enqueue({
            "event": event,
            **data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def destroy(self) -> None:
        if self.forms is not None:
            self.forms.destroy()
        if self.cache is not None:
            self.cache.unregister_client(self.client_id)
            await self.cache.close()
        self.forms = None
        self.cache = None
        self.is_initialized = False
        self._restore_exception_handler()
