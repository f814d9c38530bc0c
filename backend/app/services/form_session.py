"""
Form session manager for landing-page forms.

One FormSession per form, one FieldSession per field.

Field state machine:

    untouched -> validating -> valid | invalid

Every input moves the field to "validating" and (re)starts a debounce timer
on the running event loop; when the timer fires the field is revalidated.
Blur and submit call the same revalidate_now() transition directly, cancelling
any pending timer, so the debounced and the authoritative paths can never
disagree about a field's state.

Form state machine:

    idle -> submitting -> success | error -> idle

The form returns to idle when its transient message is dismissed. At most one
submission per form is in flight; a submit while one is running is ignored,
not queued. A submit with any invalid field never reaches the transport.

The submit button is enabled only while every field that has at least one
validator is valid and nothing is in flight.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional
from uuid import uuid4

import httpx

from app.models.forms import (
    FieldSpec,
    FieldState,
    FieldView,
    FormMessage,
    FormSpec,
    FormState,
    FormView,
    LiveRegion,
    SubmitOutcome,
)
from app.services.event_bus import APP_ESCAPE, FORM_ERROR, FORM_SUCCESS, EventBus
from app.services.field_validators import run_validators
from app.services.offline_queue import OfflineQueue

logger = logging.getLogger(__name__)

DEBOUNCE_DELAY = 0.3
MESSAGE_TIMEOUT = 5.0
RESET_DELAY = 2.0
MOBILE_BREAKPOINT = 768

SUCCESS_TEXT = "Thank you! We'll be in touch soon."
DEFAULT_ERROR_TEXT = "Something went wrong. Please try again."
SUBMITTING_LABEL = "Submitting..."
INVALID_RESPONSE_TEXT = "Invalid response from server"

Transport = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


class FormSubmissionError(Exception):
    """Submission rejected by the server or lost on the network."""


class HttpFormTransport:
    """
    POSTs form payloads as JSON.

    No timeout beyond the client's default is applied; a hung request keeps
    the form in "submitting" until the client gives up.
    """

    def __init__(self, endpoint: str, client: Optional[httpx.AsyncClient] = None):
        self.endpoint = endpoint
        self._client = client or httpx.AsyncClient()

    async def __call__(self, data: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self._client.post(
                self.endpoint,
                json=data,
                headers={"X-Requested-With": "XMLHttpRequest"},
            )
        except httpx.TransportError as e:
            raise FormSubmissionError(f"Network error: {e}") from e

        if not response.is_success:
            raise FormSubmissionError(_error_text(response))
        if not response.content.strip():
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise FormSubmissionError(INVALID_RESPONSE_TEXT) from e
        if not isinstance(body, dict):
            raise FormSubmissionError(INVALID_RESPONSE_TEXT)
        return body

    async def aclose(self) -> None:
        await self._client.aclose()


def _error_text(response: httpx.Response) -> str:
    """Prefer the server's {"error": "..."} text, else the HTTP status line."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict) and isinstance(body.get("error"), str):
        return body["error"]
    return f"HTTP {response.status_code}: {response.reason_phrase}"


# ---------------------------------------------------------------------------
# Fields
# ---------------------------------------------------------------------------

class FieldSession:
    def __init__(
        self,
        spec: FieldSpec,
        form_id: str,
        on_change: Callable[[], None],
        debounce_delay: float = DEBOUNCE_DELAY,
    ):
        self.name = spec.name
        self.validators = list(spec.validators)
        self.initial_value = spec.value
        self.value = spec.value
        self.state = FieldState.UNTOUCHED
        self.message = ""
        self.view = FieldView(error=LiveRegion(element_id=f"{form_id}_{spec.name}_error"))
        self._on_change = on_change
        self._debounce_delay = debounce_delay
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def is_valid(self) -> bool:
        return not self.validators or self.state is FieldState.VALID

    def input(self, value: str) -> None:
        self.value = value
        self.state = FieldState.VALIDATING
        self.cancel_pending()
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._debounce_delay, self._debounce_elapsed)

    def _debounce_elapsed(self) -> None:
        self._timer = None
        self.revalidate_now()

    def revalidate_now(self) -> bool:
        """Validate the current value immediately and update the view."""
        self.cancel_pending()
        result = run_validators(self.validators, self.value.strip())

        if result.valid:
            self.state = FieldState.VALID
            self.view.classes.discard("is-invalid")
            self.view.classes.add("is-valid")
            self.clear_error()
        else:
            self.state = FieldState.INVALID
            self.view.classes.discard("is-valid")
            self.view.classes.add("is-invalid")
            self.show_error(result.message)

        self._on_change()
        return result.valid

    def focus(self) -> None:
        self.view.focused = True
        self.view.classes.add("is-focused")
        self.clear_error()

    def blur(self) -> None:
        self.view.focused = False
        self.view.classes.discard("is-focused")
        self.revalidate_now()

    def show_error(self, message: str) -> None:
        self.message = message
        region = self.view.error
        if region.text != message:
            region.announcements.append(message)
        region.text = message
        region.visible = True

    def clear_error(self) -> None:
        self.message = ""
        self.view.error.text = ""
        self.view.error.visible = False

    def reset(self) -> None:
        self.cancel_pending()
        self.value = self.initial_value
        self.state = FieldState.UNTOUCHED
        self.view.classes.difference_update({"is-valid", "is-invalid"})
        self.clear_error()

    def cancel_pending(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


# ---------------------------------------------------------------------------
# Forms
# ---------------------------------------------------------------------------

class FormSession:
    def __init__(
        self,
        spec: FormSpec,
        transport: Transport,
        bus: Optional[EventBus] = None,
        analytics_queue: Optional[OfflineQueue] = None,
        page_context: Optional[Dict[str, str]] = None,
        debounce_delay: float = DEBOUNCE_DELAY,
        message_timeout: float = MESSAGE_TIMEOUT,
        reset_delay: float = RESET_DELAY,
    ):
        self.form_id = spec.form_id or f"form_{uuid4().hex[:9]}"
        self.form_type = spec.form_type
        self.reset_on_success = spec.reset_on_success
        self.state = FormState.IDLE
        self.view = FormView(submit_label=spec.submit_label)
        self.fields: Dict[str, FieldSession] = {
            field.name: FieldSession(field, self.form_id, self._update_submit_state, debounce_delay)
            for field in spec.fields
        }
        self._transport = transport
        self._bus = bus
        self._analytics_queue = analytics_queue
        self._page_context = page_context or {}
        self._submit_label = spec.submit_label
        self._message_timeout = message_timeout
        self._reset_delay = reset_delay
        self._message_timer: Optional[asyncio.TimerHandle] = None
        self._reset_timer: Optional[asyncio.TimerHandle] = None
        self._update_submit_state()

    # -- field events ------------------------------------------------------

    def field(self, name: str) -> FieldSession:
        return self.fields[name]

    def input(self, name: str, value: str) -> None:
        self.fields[name].input(value)
        self._update_submit_state()

    def focus(self, name: str) -> None:
        self.fields[name].focus()
        self.view.focused_field = name

    def blur(self, name: str) -> None:
        self.fields[name].blur()
        if self.view.focused_field == name:
            self.view.focused_field = None

    # -- validation --------------------------------------------------------

    @property
    def is_valid(self) -> bool:
        return all(field.is_valid for field in self.fields.values())

    def validate_all(self) -> bool:
        """Revalidate every field now, regardless of pending debounce timers."""
        results = [field.revalidate_now() for field in self.fields.values()]
        return all(results)

    def first_invalid_field(self) -> Optional[FieldSession]:
        for field in self.fields.values():
            if not field.is_valid:
                return field
        return None

    def _update_submit_state(self) -> None:
        submitting = self.state is FormState.SUBMITTING
        self.view.submit_disabled = submitting or not self.is_valid

    # -- submission --------------------------------------------------------

    def collect_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {name: field.value for name, field in self.fields.items()}
        metadata = {
            "formType": self.form_type,
            "formId": self.form_id,
            "submittedAt": datetime.now(timezone.utc).isoformat(),
        }
        for key in ("url", "referrer", "userAgent"):
            if self._page_context.get(key):
                metadata[key] = self._page_context[key]
        data["metadata"] = metadata
        return data

    async def submit(self) -> SubmitOutcome:
        if self.state is FormState.SUBMITTING:
            logger.debug(f"Submission already in flight for {self.form_id}; ignored")
            return SubmitOutcome.IGNORED

        if not self.validate_all():
            invalid = self.first_invalid_field()
            if invalid is not None:
                self.focus(invalid.name)
            return SubmitOutcome.INVALID

        self._set_loading(True)
        try:
            result = await self._transport(self.collect_data())
        except Exception as e:
            failure: Optional[Exception] = e
            result = None
        else:
            failure = None
        finally:
            self._set_loading(False)

        if failure is not None:
            logger.warning(f"Form submission error for {self.form_id}: {failure}")
            self._on_failure(failure)
            return SubmitOutcome.ERROR

        self._on_success(result or {})
        return SubmitOutcome.SUCCESS

    def _set_loading(self, loading: bool) -> None:
        if loading:
            self.state = FormState.SUBMITTING
            self.view.classes.add("is-loading")
            self.view.submit_label = SUBMITTING_LABEL
        else:
            self.state = FormState.IDLE
            self.view.classes.discard("is-loading")
            self.view.submit_label = self._submit_label
        self._update_submit_state()

    def _on_success(self, result: Dict[str, Any]) -> None:
        self.state = FormState.SUCCESS
        self._show_message(FormMessage(kind="success", text=SUCCESS_TEXT))
        self._track("success")

        if self.reset_on_success:
            loop = asyncio.get_running_loop()
            self._cancel(self._reset_timer)
            self._reset_timer = loop.call_later(self._reset_delay, self.reset)

        if self._bus is not None:
            self._bus.publish(FORM_SUCCESS, {
                "formId": self.form_id,
                "formType": self.form_type,
                "result": result,
            })

    def _on_failure(self, error: Exception) -> None:
        self.state = FormState.ERROR
        text = str(error) or DEFAULT_ERROR_TEXT
        self._show_message(FormMessage(kind="error", text=text))
        self._track("error", text)

        if self._bus is not None:
            self._bus.publish(FORM_ERROR, {
                "formId": self.form_id,
                "formType": self.form_type,
                "error": text,
            })

    # -- messages ----------------------------------------------------------

    def _show_message(self, message: FormMessage) -> None:
        self.view.message = message
        self._cancel(self._message_timer)
        loop = asyncio.get_running_loop()
        self._message_timer = loop.call_later(self._message_timeout, self.dismiss_message)

    def dismiss_message(self) -> None:
        self._cancel(self._message_timer)
        self._message_timer = None
        self.view.message = None
        if self.state in (FormState.SUCCESS, FormState.ERROR):
            self.state = FormState.IDLE

    def reset(self) -> None:
        self._cancel(self._reset_timer)
        self._reset_timer = None
        for field in self.fields.values():
            field.reset()
        self._update_submit_state()

    def handle_resize(self, width: int) -> None:
        if width < MOBILE_BREAKPOINT:
            self.view.classes.add("is-mobile")
        else:
            self.view.classes.discard("is-mobile")

    def _track(self, status: str, error: Optional[str] = None) -> None:
        if self._analytics_queue is None:
            return
        self._analytics_queue.enqueue({
            "event": "form_submission",
            "formType": self.form_type,
            "status": status,
            "error": error,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    @staticmethod
    def _cancel(timer: Optional[asyncio.TimerHandle]) -> None:
        if timer is not None:
            timer.cancel()

    def destroy(self) -> None:
        self._cancel(self._message_timer)
        self._cancel(self._reset_timer)
        for field in self.fields.values():
            field.cancel_pending()


class FormSessionManager:
    """Owns every form session on a page."""

    def __init__(
        self,
        transport: Transport,
        bus: Optional[EventBus] = None,
        analytics_queue: Optional[OfflineQueue] = None,
        page_context: Optional[Dict[str, str]] = None,
        debounce_delay: float = DEBOUNCE_DELAY,
        message_timeout: float = MESSAGE_TIMEOUT,
        reset_delay: float = RESET_DELAY,
    ):
        self.forms: Dict[str, FormSession] = {}
        self._transport = transport
        self._bus = bus
        self._analytics_queue = analytics_queue
        self._page_context = page_context
        self._timings = {
            "debounce_delay": debounce_delay,
            "message_timeout": message_timeout,
            "reset_delay": reset_delay,
        }
        self._unsubscribers: List[Callable[[], None]] = []

    def discover(self, specs: Iterable[FormSpec]) -> List[FormSession]:
        """Create a session for each form found on the page."""
        created = []
        for spec in specs:
            session = FormSession(
                spec,
                self._transport,
                bus=self._bus,
                analytics_queue=self._analytics_queue,
                page_context=self._page_context,
                **self._timings,
            )
            self.forms[session.form_id] = session
            created.append(session)

        if self._bus is not None and not self._unsubscribers:
            self._unsubscribers.append(
                self._bus.subscribe(APP_ESCAPE, lambda payload: self.clear_messages())
            )
        logger.info(f"Initialized {len(created)} form(s)")
        return created

    def get(self, form_id: str) -> FormSession:
        return self.forms[form_id]

    async def submit(self, form_id: str) -> SubmitOutcome:
        return await self.forms[form_id].submit()

    def handle_resize(self, width: int) -> None:
        for form in self.forms.values():
            form.handle_resize(width)

    def clear_messages(self) -> None:
        for form in self.forms.values():
            form.dismiss_message()

    def destroy(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for form in self.forms.values():
            form.destroy()
        self.forms.clear()
