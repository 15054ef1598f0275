"""Tests for sluice.scheduler: tool call lifecycle, confirmation and trust."""

import threading

import pytest

from sluice.scheduler import (
    CANCELLED_BY_USER,
    Confirmation,
    ConfirmationOutcome,
    Scheduler,
    ToolCall,
    ToolCallStateError,
    ToolCallStatus,
)
from sluice.tools import ConfirmationDetails, Tool, ToolError, ToolOutput, ToolRegistry
from sluice.trust import TrustLevel, TrustStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeTool(Tool):
    name = "fake"
    description = "A tool for tests."
    parameters = {
        "type": "object",
        "properties": {"value": {"type": "string"}},
        "required": ["value"],
    }

    def __init__(self, confirm=True, server=None, error=None, name=None):
        self.confirm = confirm
        self.server = server
        self.error = error
        if name:
            self.name = name
        self.calls = []

    def get_description(self, args):
        return f"fake {args.get('value')}"

    def should_confirm_execute(self, args):
        if not self.confirm:
            return None
        return ConfirmationDetails(
            kind="exec",
            title="Confirm fake",
            description=args["value"],
            tool_name=self.name,
            server=self.server,
        )

    def execute(self, args, cancel, on_output=None):
        self.calls.append(args)
        if on_output is not None:
            on_output("partial")
        if self.error is not None:
            raise self.error
        return ToolOutput(f"did {args['value']}", f"shown {args['value']}")


def _make(tool, answer=None, trust=None, auto_approve=False):
    """Scheduler whose on_update answers confirmations with ``answer``."""
    registry = ToolRegistry()
    registry.register(tool)
    events = []

    def on_update(call):
        events.append(call.status)
        if call.status is ToolCallStatus.CONFIRMING and answer is not None:
            call.confirmation.resolve(answer)

    scheduler = Scheduler(
        registry,
        trust or TrustStore(),
        on_start=lambda call: events.append("start"),
        on_update=on_update,
        on_output=lambda call, text: events.append(("output", text)),
        auto_approve=auto_approve,
    )
    return scheduler, events


def _call(value="x", name="fake", call_id="c1"):
    return ToolCall(id=call_id, name=name, args={"value": value})


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_approved_call_succeeds(self):
        tool = FakeTool()
        scheduler, events = _make(tool, ConfirmationOutcome.APPROVE_ONCE)
        call = _call()
        result = scheduler.schedule(call)

        assert result.status is ToolCallStatus.SUCCESS
        assert result.content == "did x"
        assert result.display == "shown x"
        assert not result.is_error
        assert call.result is result
        assert call.description == "fake x"
        assert events == [
            "start",
            ToolCallStatus.CONFIRMING,
            ToolCallStatus.INVOKED,
            ("output", "partial"),
            ToolCallStatus.SUCCESS,
        ]

    def test_no_confirmation_needed(self):
        tool = FakeTool(confirm=False)
        scheduler, events = _make(tool)
        result = scheduler.schedule(_call())
        assert result.status is ToolCallStatus.SUCCESS
        assert ToolCallStatus.CONFIRMING not in events

    def test_denied_call_never_executes(self):
        tool = FakeTool()
        scheduler, events = _make(tool, ConfirmationOutcome.DENY)
        result = scheduler.schedule(_call())

        assert result.status is ToolCallStatus.ERROR
        assert result.content == CANCELLED_BY_USER
        assert tool.calls == []
        assert ToolCallStatus.INVOKED not in events

    def test_unknown_tool(self):
        scheduler, events = _make(FakeTool())
        result = scheduler.schedule(_call(name="missing"))
        assert result.status is ToolCallStatus.ERROR
        assert result.content == 'Tool "missing" not found in registry.'
        assert "start" not in events

    def test_invalid_tool_name_treated_as_unknown(self):
        scheduler, events = _make(FakeTool())
        result = scheduler.schedule(_call(name="../fake"))
        assert result.content == 'Tool "../fake" not found in registry.'
        assert "start" not in events

    def test_invalid_arguments(self):
        tool = FakeTool()
        scheduler, _ = _make(tool, ConfirmationOutcome.APPROVE_ONCE)
        call = ToolCall(id="c1", name="fake", args={"value": 3})
        result = scheduler.schedule(call)
        assert result.status is ToolCallStatus.ERROR
        assert result.content.startswith("Invalid arguments for fake:")
        assert tool.calls == []

    def test_raw_string_arguments_rejected(self):
        scheduler, _ = _make(FakeTool(), ConfirmationOutcome.APPROVE_ONCE)
        call = ToolCall(id="c1", name="fake", args='{"value": ')
        result = scheduler.schedule(call)
        assert result.content == (
            "Invalid arguments for fake: Tool arguments must be a JSON object."
        )

    @pytest.mark.parametrize(
        "prop", [{"type": ["string", "null"]}, True, {"anyOf": [{"type": "string"}]}]
    )
    def test_loose_property_schemas_accepted(self, prop):
        tool = FakeTool(confirm=False)
        tool.parameters = {"type": "object", "properties": {"value": prop}}
        scheduler, _ = _make(tool)
        result = scheduler.schedule(_call())
        assert result.status is ToolCallStatus.SUCCESS
        assert tool.calls == [{"value": "x"}]

    def test_nullable_type_still_checked(self):
        tool = FakeTool(confirm=False)
        tool.parameters = {
            "type": "object",
            "properties": {"value": {"type": ["integer", "null"]}},
        }
        scheduler, _ = _make(tool)
        result = scheduler.schedule(_call("x"))
        assert result.status is ToolCallStatus.ERROR
        assert "must be of type integer or null" in result.content
        assert tool.calls == []

    def test_validate_exception_is_data(self):
        class Broken(FakeTool):
            def validate(self, args):
                raise TypeError("bad schema")

        tool = Broken(confirm=False)
        scheduler, events = _make(tool)
        result = scheduler.schedule(_call())
        assert result.status is ToolCallStatus.ERROR
        assert result.content == "Error validating arguments for fake: bad schema"
        assert tool.calls == []
        assert events[-1] is ToolCallStatus.ERROR

    def test_tool_error_is_data(self):
        tool = FakeTool(confirm=False, error=ToolError("boom", display="it broke"))
        scheduler, _ = _make(tool)
        result = scheduler.schedule(_call())
        assert result.status is ToolCallStatus.ERROR
        assert result.content == "boom"
        assert result.display == "it broke"

    def test_unexpected_exception_is_data(self):
        tool = FakeTool(confirm=False, error=RuntimeError("kaput"))
        scheduler, _ = _make(tool)
        result = scheduler.schedule(_call())
        assert result.status is ToolCallStatus.ERROR
        assert result.content == "Error executing tool fake: kaput"

    def test_finished_call_cannot_be_rescheduled(self):
        scheduler, _ = _make(FakeTool(confirm=False))
        call = _call()
        scheduler.schedule(call)
        with pytest.raises(ToolCallStateError):
            scheduler.schedule(call)

    def test_reentrant_schedule_rejected(self):
        tool = FakeTool()
        registry = ToolRegistry()
        registry.register(tool)
        call = _call()
        errors = []

        def on_update(c):
            if c.status is ToolCallStatus.CONFIRMING:
                try:
                    scheduler.schedule(call)
                except ToolCallStateError as exc:
                    errors.append(exc)
                c.confirmation.resolve(ConfirmationOutcome.APPROVE_ONCE)

        scheduler = Scheduler(registry, TrustStore(), on_update=on_update)
        result = scheduler.schedule(call)
        assert result.status is ToolCallStatus.SUCCESS
        assert len(errors) == 1

    def test_illegal_transition(self):
        call = _call()
        with pytest.raises(ToolCallStateError):
            call.transition(ToolCallStatus.SUCCESS)


# ---------------------------------------------------------------------------
# Confirmation, trust and cancellation
# ---------------------------------------------------------------------------


class TestConfirmationAndTrust:
    def test_auto_approve_skips_confirmation(self):
        tool = FakeTool()
        scheduler, events = _make(tool, auto_approve=True)
        result = scheduler.schedule(_call())
        assert result.status is ToolCallStatus.SUCCESS
        assert ToolCallStatus.CONFIRMING not in events

    def test_trust_tool_skips_later_confirmations(self):
        tool = FakeTool()
        trust = TrustStore()
        scheduler, events = _make(tool, ConfirmationOutcome.APPROVE_TRUST_TOOL, trust)
        scheduler.schedule(_call(call_id="c1"))
        assert trust.level("fake") is TrustLevel.TOOL

        events.clear()
        scheduler.schedule(_call(call_id="c2"))
        assert ToolCallStatus.CONFIRMING not in events
        assert len(tool.calls) == 2

    def test_approve_once_does_not_persist(self):
        tool = FakeTool()
        trust = TrustStore()
        scheduler, events = _make(tool, ConfirmationOutcome.APPROVE_ONCE, trust)
        scheduler.schedule(_call(call_id="c1"))
        scheduler.schedule(_call(call_id="c2"))
        assert events.count(ToolCallStatus.CONFIRMING) == 2
        assert trust.level("fake") is TrustLevel.NONE

    def test_trust_server(self):
        tool = FakeTool(server="docs")
        trust = TrustStore()
        scheduler, _ = _make(tool, ConfirmationOutcome.APPROVE_TRUST_SERVER, trust)
        scheduler.schedule(_call())
        assert trust.level("other_tool", "docs") is TrustLevel.SERVER

    def test_trust_server_without_server_falls_back_to_tool(self):
        tool = FakeTool()
        trust = TrustStore()
        scheduler, _ = _make(tool, ConfirmationOutcome.APPROVE_TRUST_SERVER, trust)
        scheduler.schedule(_call())
        assert trust.level("fake") is TrustLevel.TOOL

    def test_cancel_while_confirming(self):
        tool = FakeTool()
        cancel = threading.Event()
        registry = ToolRegistry()
        registry.register(tool)

        def on_update(call):
            if call.status is ToolCallStatus.CONFIRMING:
                cancel.set()

        scheduler = Scheduler(registry, TrustStore(), on_update=on_update)
        result = scheduler.schedule(_call(), cancel)
        assert result.status is ToolCallStatus.ERROR
        assert result.content == CANCELLED_BY_USER
        assert tool.calls == []

    def test_resolve_from_another_thread(self):
        tool = FakeTool()
        registry = ToolRegistry()
        registry.register(tool)
        pending = []
        ready = threading.Event()

        def on_update(call):
            if call.status is ToolCallStatus.CONFIRMING:
                pending.append(call.confirmation)
                ready.set()

        def answer():
            ready.wait(5)
            pending[0].resolve(ConfirmationOutcome.APPROVE_ONCE)

        worker = threading.Thread(target=answer)
        worker.start()
        scheduler = Scheduler(registry, TrustStore(), on_update=on_update)
        result = scheduler.schedule(_call())
        worker.join(5)
        assert result.status is ToolCallStatus.SUCCESS


class TestConfirmation:
    def test_resolve_twice_raises(self):
        confirmation = Confirmation(
            ConfirmationDetails("info", "t", "d", tool_name="fake")
        )
        confirmation.resolve(ConfirmationOutcome.DENY)
        with pytest.raises(ToolCallStateError):
            confirmation.resolve(ConfirmationOutcome.APPROVE_ONCE)
        assert confirmation.wait() is ConfirmationOutcome.DENY

    def test_wait_returns_none_on_cancel(self):
        confirmation = Confirmation(
            ConfirmationDetails("info", "t", "d", tool_name="fake")
        )
        cancel = threading.Event()
        cancel.set()
        assert confirmation.wait(cancel) is None
