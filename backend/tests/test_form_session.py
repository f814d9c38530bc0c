"""
Form session manager tests.

Timers run on the real event loop with millisecond delays; the transport is a
recording stub (or HttpFormTransport over httpx.MockTransport).

Coverage:
  - debounced field validation and the blur / focus transitions
  - submit gating: invalid forms never reach the transport
  - one in-flight submission per form
  - success / error messages, auto-dismiss and reset
  - HttpFormTransport error mapping
"""

import asyncio
import json

import httpx
import pytest

from app.models.forms import FieldSpec, FieldState, FormSpec, FormState, SubmitOutcome
from app.services.event_bus import APP_ESCAPE, FORM_ERROR, FORM_SUCCESS, EventBus
from app.services.form_session import (
    SUBMITTING_LABEL,
    SUCCESS_TEXT,
    FormSession,
    FormSessionManager,
    FormSubmissionError,
    HttpFormTransport,
)
from app.services.offline_queue import OfflineQueue

FAST = {"debounce_delay": 0.01, "message_timeout": 0.05, "reset_delay": 0.03}


class RecordingTransport:
    def __init__(self, result=None, error=None):
        self.calls = []
        self.result = result or {"success": True, "isNew": True}
        self.error = error
        self.gate = None

    async def __call__(self, data):
        self.calls.append(data)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.result


def _spec(**overrides) -> FormSpec:
    values = {
        "form_id": "hero-form",
        "fields": [
            FieldSpec(name="email", validators=["required", "email"]),
            FieldSpec(name="name", validators=["name"]),
            FieldSpec(name="company"),
        ],
    }
    values.update(overrides)
    return FormSpec(**values)


def _form(transport=None, **kwargs) -> FormSession:
    options = {**FAST, **kwargs}
    return FormSession(_spec(), transport or RecordingTransport(), **options)


def _fill(form: FormSession, email="founder@gmail.com", name="Ada"):
    form.field("email").value = email
    form.field("name").value = name


# ---------------------------------------------------------------------------
# Field validation
# ---------------------------------------------------------------------------

class TestFieldValidation:

    @pytest.mark.asyncio
    async def test_input_validates_after_debounce(self):
        form = _form()

        form.input("email", "not-an-email")
        assert form.field("email").state is FieldState.VALIDATING

        await asyncio.sleep(0.05)

        field = form.field("email")
        assert field.state is FieldState.INVALID
        assert field.message == "Please enter a valid email address"
        assert "is-invalid" in field.view.classes
        assert field.view.error.visible is True
        assert field.view.error.role == "alert"
        form.destroy()

    @pytest.mark.asyncio
    async def test_rapid_input_validates_only_final_value(self):
        form = _form()

        for partial in ("f", "fo", "founder@", "founder@gmail.com"):
            form.input("email", partial)
        await asyncio.sleep(0.05)

        field = form.field("email")
        assert field.state is FieldState.VALID
        assert field.view.error.announcements == []
        assert "is-valid" in field.view.classes
        form.destroy()

    @pytest.mark.asyncio
    async def test_blur_validates_immediately_and_cancels_timer(self):
        form = _form(debounce_delay=10)

        form.input("email", "bad")
        form.blur("email")

        assert form.field("email").state is FieldState.INVALID
        assert form.field("email")._timer is None
        form.destroy()

    @pytest.mark.asyncio
    async def test_focus_clears_error(self):
        form = _form()
        form.blur("email")
        assert form.field("email").view.error.visible is True

        form.focus("email")

        field = form.field("email")
        assert field.view.error.visible is False
        assert field.view.error.text == ""
        assert "is-focused" in field.view.classes
        assert form.view.focused_field == "email"
        form.destroy()

    @pytest.mark.asyncio
    async def test_error_is_announced_once_per_change(self):
        form = _form()

        form.blur("email")
        form.blur("email")
        form.field("email").value = "bad"
        form.blur("email")

        assert form.field("email").view.error.announcements == [
            "This field is required",
            "Please enter a valid email address",
        ]
        form.destroy()

    @pytest.mark.asyncio
    async def test_submit_enabled_only_when_all_validated_fields_pass(self):
        form = _form()
        assert form.view.submit_disabled is True

        form.input("email", "founder@gmail.com")
        form.input("name", "Ada")
        await asyncio.sleep(0.05)

        assert form.view.submit_disabled is False
        form.destroy()

    def test_field_without_validators_is_always_valid(self):
        form = _form()
        assert form.field("company").is_valid is True

    @pytest.mark.asyncio
    async def test_validators_declared_as_markup_string(self):
        spec = FormSpec(form_id="footer-form", fields=[{"name": "email", "validators": "required,email"}])
        form = FormSession(spec, RecordingTransport(), **FAST)

        form.blur("email")

        assert form.field("email").message == "This field is required"
        form.destroy()


# ---------------------------------------------------------------------------
# Submission
# ---------------------------------------------------------------------------

class TestSubmit:

    @pytest.mark.asyncio
    async def test_invalid_form_never_reaches_transport(self):
        transport = RecordingTransport()
        form = _form(transport)
        _fill(form, email="not-an-email")

        outcome = await form.submit()

        assert outcome is SubmitOutcome.INVALID
        assert transport.calls == []
        assert form.state is FormState.IDLE
        assert form.view.focused_field == "email"
        form.destroy()

    @pytest.mark.asyncio
    async def test_submit_revalidates_pending_fields(self):
        """A pending debounce cannot leave a stale valid state behind."""
        transport = RecordingTransport()
        form = _form(transport, debounce_delay=10)
        _fill(form)
        form.validate_all()

        form.input("email", "broken")
        outcome = await form.submit()

        assert outcome is SubmitOutcome.INVALID
        assert transport.calls == []
        form.destroy()

    @pytest.mark.asyncio
    async def test_success(self):
        bus = EventBus()
        events = []
        bus.subscribe(FORM_SUCCESS, events.append)
        analytics = OfflineQueue("analytics")
        transport = RecordingTransport()
        form = FormSession(
            _spec(), transport, bus=bus, analytics_queue=analytics,
            page_context={"url": "https://highleveragehumans.com/", "referrer": ""},
            **FAST,
        )
        _fill(form)

        outcome = await form.submit()

        assert outcome is SubmitOutcome.SUCCESS
        assert form.state is FormState.SUCCESS
        assert form.view.message.kind == "success"
        assert form.view.message.text == SUCCESS_TEXT

        sent = transport.calls[0]
        assert sent["email"] == "founder@gmail.com"
        assert sent["metadata"]["formType"] == "email-capture"
        assert sent["metadata"]["formId"] == "hero-form"
        assert sent["metadata"]["url"] == "https://highleveragehumans.com/"
        assert "referrer" not in sent["metadata"]

        assert events[0]["formId"] == "hero-form"
        assert events[0]["result"] == {"success": True, "isNew": True}
        assert [item.data["status"] for item in analytics.items()] == ["success"]
        form.destroy()

    @pytest.mark.asyncio
    async def test_success_resets_then_dismisses(self):
        form = _form(reset_delay=0.02, message_timeout=0.3)
        _fill(form)

        await form.submit()
        await asyncio.sleep(0.1)

        assert form.field("email").value == ""
        assert form.field("email").state is FieldState.UNTOUCHED
        assert form.view.message is not None

        await asyncio.sleep(0.3)

        assert form.view.message is None
        assert form.state is FormState.IDLE
        form.destroy()

    @pytest.mark.asyncio
    async def test_no_reset_when_disabled(self):
        form = FormSession(_spec(reset_on_success=False), RecordingTransport(), **FAST)
        _fill(form)

        await form.submit()
        await asyncio.sleep(0.04)

        assert form.field("email").value == "founder@gmail.com"
        form.destroy()

    @pytest.mark.asyncio
    async def test_server_error_is_shown(self):
        bus = EventBus()
        errors = []
        bus.subscribe(FORM_ERROR, errors.append)
        transport = RecordingTransport(error=FormSubmissionError("Please use a valid email address"))
        form = FormSession(_spec(), transport, bus=bus, **FAST)
        _fill(form)

        outcome = await form.submit()

        assert outcome is SubmitOutcome.ERROR
        assert form.state is FormState.ERROR
        assert form.view.message.kind == "error"
        assert form.view.message.text == "Please use a valid email address"
        assert errors[0]["error"] == "Please use a valid email address"
        assert form.view.submit_disabled is False
        form.destroy()

    @pytest.mark.asyncio
    async def test_unexpected_transport_failure_becomes_error(self):
        transport = RecordingTransport(error=RuntimeError("socket closed by peer"))
        form = _form(transport)
        _fill(form)

        outcome = await form.submit()

        assert outcome is SubmitOutcome.ERROR
        assert form.state is FormState.ERROR
        assert form.view.message.text == "socket closed by peer"
        assert form.view.submit_disabled is False
        assert "is-loading" not in form.view.classes
        form.destroy()

    @pytest.mark.asyncio
    async def test_second_submit_while_in_flight_is_ignored(self):
        transport = RecordingTransport()
        transport.gate = asyncio.Event()
        form = _form(transport)
        _fill(form)

        first = asyncio.create_task(form.submit())
        await asyncio.sleep(0)

        assert form.state is FormState.SUBMITTING
        assert form.view.submit_disabled is True
        assert form.view.submit_label == SUBMITTING_LABEL
        assert "is-loading" in form.view.classes

        assert await form.submit() is SubmitOutcome.IGNORED

        transport.gate.set()
        assert await first is SubmitOutcome.SUCCESS
        assert len(transport.calls) == 1
        assert form.view.submit_label == "Subscribe"
        assert "is-loading" not in form.view.classes
        form.destroy()

    @pytest.mark.asyncio
    async def test_dismiss_message_returns_to_idle(self):
        form = _form(RecordingTransport(error=FormSubmissionError("nope")))
        _fill(form)
        await form.submit()

        form.dismiss_message()

        assert form.view.message is None
        assert form.state is FormState.IDLE
        form.destroy()


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class TestFormSessionManager:

    @pytest.mark.asyncio
    async def test_discover_and_submit(self):
        transport = RecordingTransport()
        manager = FormSessionManager(transport, **FAST)
        manager.discover([_spec(), _spec(form_id="footer-form")])
        _fill(manager.get("footer-form"))

        assert sorted(manager.forms) == ["footer-form", "hero-form"]
        assert await manager.submit("footer-form") is SubmitOutcome.SUCCESS
        manager.destroy()

    @pytest.mark.asyncio
    async def test_escape_clears_messages(self):
        bus = EventBus()
        manager = FormSessionManager(RecordingTransport(error=FormSubmissionError("nope")), bus=bus, **FAST)
        manager.discover([_spec()])
        form = manager.get("hero-form")
        _fill(form)
        await form.submit()

        bus.publish(APP_ESCAPE, {})

        assert form.view.message is None
        manager.destroy()
        assert bus.publish(APP_ESCAPE, {}) == 0

    def test_handle_resize(self):
        manager = FormSessionManager(RecordingTransport())
        manager.discover([_spec()])

        manager.handle_resize(500)
        assert "is-mobile" in manager.get("hero-form").view.classes
        manager.handle_resize(1024)
        assert "is-mobile" not in manager.get("hero-form").view.classes


# ---------------------------------------------------------------------------
# HttpFormTransport
# ---------------------------------------------------------------------------

class TestHttpFormTransport:

    def _transport(self, handler) -> HttpFormTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpFormTransport("https://api.highleveragehumans.com/email-capture", client)

    @pytest.mark.asyncio
    async def test_posts_json_with_requested_with_header(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(201, json={"success": True, "isNew": True})

        transport = self._transport(handler)
        result = await transport({"email": "founder@gmail.com"})

        assert result == {"success": True, "isNew": True}
        assert seen[0].headers["X-Requested-With"] == "XMLHttpRequest"
        assert json.loads(seen[0].content) == {"email": "founder@gmail.com"}
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_server_error_text_is_used(self):
        transport = self._transport(
            lambda request: httpx.Response(400, json={"success": False, "error": "Email address is required"})
        )

        with pytest.raises(FormSubmissionError, match="Email address is required"):
            await transport({})
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_status_line_without_json(self):
        transport = self._transport(lambda request: httpx.Response(502, text="<html>bad gateway</html>"))

        with pytest.raises(FormSubmissionError, match="HTTP 502: Bad Gateway"):
            await transport({})
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("offline", request=request)

        transport = self._transport(handler)

        with pytest.raises(FormSubmissionError, match="Network error"):
            await transport({})
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_empty_success_body_is_an_empty_result(self):
        transport = self._transport(lambda request: httpx.Response(204))

        assert await transport({"email": "founder@gmail.com"}) == {}
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_unparseable_success_body_is_a_submission_error(self):
        transport = self._transport(lambda request: httpx.Response(200, text="<html>ok</html>"))

        with pytest.raises(FormSubmissionError, match="Invalid response from server"):
            await transport({"email": "founder@gmail.com"})
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_empty_success_body_completes_the_form(self):
        transport = self._transport(lambda request: httpx.Response(204))
        form = FormSession(_spec(), transport, **FAST)
        _fill(form)

        assert await form.submit() is SubmitOutcome.SUCCESS
        assert form.state is FormState.SUCCESS
        form.destroy()
        await transport.aclose()

    @pytest.mark.asyncio
    async def test_unparseable_success_body_shows_an_error(self):
        transport = self._transport(lambda request: httpx.Response(200, text="not json"))
        form = FormSession(_spec(), transport, **FAST)
        _fill(form)

        assert await form.submit() is SubmitOutcome.ERROR
        assert form.state is FormState.ERROR
        assert form.view.message.text == "Invalid response from server"
        form.destroy()
        await transport.aclose()
