"""Tool call lifecycle: lookup, confirmation, trust, execution, result.

A ToolCall moves PENDING -> (CONFIRMING) -> INVOKED -> SUCCESS | ERROR, or
straight from PENDING/CONFIRMING to ERROR when it is rejected or denied.
``Scheduler.schedule`` always returns a ToolCallResult; tool failures are
data for the model, never exceptions for the caller.
"""

import logging
import queue
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from .commands import validate_tool_name
from .tools import ConfirmationDetails, ToolError, ToolRegistry
from .trust import TrustLevel, TrustStore

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Tool call cancelled by user."

_WAIT_POLL_INTERVAL = 0.1


class ToolCallStateError(RuntimeError):
    """An illegal ToolCall transition or a concurrent schedule of one call."""


class ToolCallStatus(Enum):
    PENDING = "pending"
    CONFIRMING = "confirming"
    INVOKED = "invoked"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (ToolCallStatus.SUCCESS, ToolCallStatus.ERROR)


_TRANSITIONS = {
    ToolCallStatus.PENDING: {
        ToolCallStatus.CONFIRMING,
        ToolCallStatus.INVOKED,
        ToolCallStatus.ERROR,
    },
    ToolCallStatus.CONFIRMING: {ToolCallStatus.INVOKED, ToolCallStatus.ERROR},
    ToolCallStatus.INVOKED: {ToolCallStatus.SUCCESS, ToolCallStatus.ERROR},
    ToolCallStatus.SUCCESS: set(),
    ToolCallStatus.ERROR: set(),
}


class ConfirmationOutcome(Enum):
    APPROVE_ONCE = "approve_once"
    APPROVE_TRUST_TOOL = "approve_trust_tool"
    APPROVE_TRUST_SERVER = "approve_trust_server"
    DENY = "deny"


_TRUST_FOR_OUTCOME = {
    ConfirmationOutcome.APPROVE_ONCE: TrustLevel.THIS_CALL_ONLY,
    ConfirmationOutcome.APPROVE_TRUST_TOOL: TrustLevel.TOOL,
    ConfirmationOutcome.APPROVE_TRUST_SERVER: TrustLevel.SERVER,
}


class Confirmation:
    """A pending confirmation: what to show, plus a one-shot answer slot.

    The UI calls ``resolve`` exactly once, from any thread.
    """

    def __init__(self, details: ConfirmationDetails):
        self.details = details
        self._answer: queue.Queue[ConfirmationOutcome] = queue.Queue(maxsize=1)

    def resolve(self, outcome: ConfirmationOutcome) -> None:
        try:
            self._answer.put_nowait(outcome)
        except queue.Full:
            raise ToolCallStateError("confirmation already resolved") from None

    def wait(self, cancel: threading.Event | None = None) -> ConfirmationOutcome | None:
        """Block until resolved. Returns None if ``cancel`` fires first."""
        while True:
            if cancel is not None and cancel.is_set():
                return None
            try:
                return self._answer.get(timeout=_WAIT_POLL_INTERVAL)
            except queue.Empty:
                continue


@dataclass(frozen=True)
class ToolCallResult:
    call_id: str
    name: str
    status: ToolCallStatus
    content: str  # fed back to the model
    display: str  # shown to the user

    @property
    def is_error(self) -> bool:
        return self.status is ToolCallStatus.ERROR


@dataclass
class ToolCall:
    id: str
    name: str
    args: dict = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    confirmation: Confirmation | None = None
    result: ToolCallResult | None = None
    description: str = ""

    def transition(self, status: ToolCallStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise ToolCallStateError(
                f"tool call {self.id}: cannot move from "
                f"{self.status.value} to {status.value}"
            )
        self.status = status
        if status is not ToolCallStatus.CONFIRMING:
            self.confirmation = None


class Scheduler:
    """Runs ToolCalls against a registry under a confirmation/trust policy.

    Callbacks (all invoked on the scheduling thread):

    - ``on_start(call)``: the tool was found and is about to be considered.
    - ``on_update(call)``: after every status change; a call in CONFIRMING
      carries ``call.confirmation`` for the UI to resolve.
    - ``on_output(call, text)``: live output from tools that stream it.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        trust: TrustStore,
        on_start: Callable[["ToolCall"], None] | None = None,
        on_update: Callable[["ToolCall"], None] | None = None,
        on_output: Callable[["ToolCall", str], None] | None = None,
        auto_approve: bool = False,
    ):
        self.registry = registry
        self.trust = trust
        self.on_start = on_start
        self.on_update = on_update
        self.on_output = on_output
        self.auto_approve = auto_approve
        self._lock = threading.Lock()
        self._in_flight: set[str] = set()

    def schedule(
        self, call: ToolCall, cancel: threading.Event | None = None
    ) -> ToolCallResult:
        """Drive ``call`` to SUCCESS or ERROR and return its result.

        Raises:
            ToolCallStateError: If ``call`` is already finished or is being
                scheduled on another thread.
        """
        with self._lock:
            if call.id in self._in_flight:
                raise ToolCallStateError(f"tool call {call.id} is already scheduled")
            if call.status is not ToolCallStatus.PENDING:
                raise ToolCallStateError(
                    f"tool call {call.id} is {call.status.value}, not pending"
                )
            self._in_flight.add(call.id)
        try:
            return self._run(call, cancel)
        finally:
            with self._lock:
                self._in_flight.discard(call.id)

    def _run(self, call: ToolCall, cancel: threading.Event | None) -> ToolCallResult:
        tool = None
        if validate_tool_name(call.name) is None:
            tool = self.registry.get_tool(call.name)
        if tool is None:
            logger.info("model requested unknown tool %r", call.name)
            message = f'Tool "{call.name}" not found in registry.'
            return self._finish(call, ToolCallStatus.ERROR, message, message)

        try:
            call.description = tool.get_description(call.args)
        except Exception:
            call.description = call.name
        self._emit(self.on_start, call)

        try:
            reason = tool.validate(call.args)
        except Exception as exc:
            logger.warning("argument check for %s failed: %s", call.name, exc)
            message = f"Error validating arguments for {call.name}: {exc}"
            return self._finish(call, ToolCallStatus.ERROR, message, message)
        if reason is not None:
            message = f"Invalid arguments for {call.name}: {reason}"
            return self._finish(call, ToolCallStatus.ERROR, message, message)

        try:
            details = tool.should_confirm_execute(call.args)
        except Exception as exc:
            logger.warning("confirmation check for %s failed: %s", call.name, exc)
            message = f"Error preparing {call.name}: {exc}"
            return self._finish(call, ToolCallStatus.ERROR, message, message)

        if (
            details is not None
            and not self.auto_approve
            and not self.trust.is_trusted(tool.name, tool.server)
        ):
            outcome = self._confirm(call, details, cancel)
            if outcome is None or outcome is ConfirmationOutcome.DENY:
                return self._finish(
                    call, ToolCallStatus.ERROR, CANCELLED_BY_USER, CANCELLED_BY_USER
                )
            self._record_trust(outcome, tool.name, tool.server)

        call.transition(ToolCallStatus.INVOKED)
        self._emit(self.on_update, call)

        def forward_output(text: str) -> None:
            if self.on_output is not None:
                self.on_output(call, text)

        try:
            output = tool.execute(call.args, cancel, on_output=forward_output)
        except ToolError as exc:
            return self._finish(call, ToolCallStatus.ERROR, str(exc), exc.display)
        except Exception as exc:
            logger.exception("tool %s raised", call.name)
            message = f"Error executing tool {call.name}: {exc}"
            return self._finish(call, ToolCallStatus.ERROR, message, message)
        return self._finish(
            call, ToolCallStatus.SUCCESS, output.content, output.display
        )

    def _confirm(
        self,
        call: ToolCall,
        details: ConfirmationDetails,
        cancel: threading.Event | None,
    ) -> ConfirmationOutcome | None:
        confirmation = Confirmation(details)
        call.transition(ToolCallStatus.CONFIRMING)
        call.confirmation = confirmation
        self._emit(self.on_update, call)
        return confirmation.wait(cancel)

    def _record_trust(
        self, outcome: ConfirmationOutcome, tool_name: str, server: str | None
    ) -> None:
        level = _TRUST_FOR_OUTCOME[outcome]
        if level is TrustLevel.SERVER and server is None:
            # Built-in tools have no server; trust the tool itself.
            level = TrustLevel.TOOL
        self.trust.grant(level, tool_name, server)

    def _finish(
        self, call: ToolCall, status: ToolCallStatus, content: str, display: str
    ) -> ToolCallResult:
        call.transition(status)
        call.result = ToolCallResult(
            call_id=call.id,
            name=call.name,
            status=status,
            content=content,
            display=display,
        )
        self._emit(self.on_update, call)
        return call.result

    @staticmethod
    def _emit(callback, call: ToolCall) -> None:
        if callback is not None:
            callback(call)
