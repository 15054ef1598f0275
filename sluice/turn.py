"""Driving one user turn: stream model output, run tools, loop until done."""

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterator, Protocol

from .errors import ModelError
from .events import (
    Content,
    Finished,
    StreamError,
    StreamEvent,
    ToolCallConfirmationRequest,
    ToolCallRequest,
    ToolCallResponse,
)
from .markdown import find_last_safe_split_point
from .scheduler import (
    ConfirmationOutcome,
    Scheduler,
    ToolCall,
    ToolCallResult,
    ToolCallStatus,
)
from .tools import ConfirmationDetails

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 50
CANCELLED_MESSAGE = "Request cancelled."


class StreamingState(Enum):
    IDLE = "idle"
    RESPONDING = "responding"
    WAITING_FOR_CONFIRMATION = "waiting_for_confirmation"


class DisplaySink(Protocol):
    def add_item(self, data: dict, timestamp: float) -> int: ...

    def update_item(self, item_id: int, update_fn: Callable[[dict], dict]) -> None: ...


class ModelService(Protocol):
    def send_stream(
        self, history: list[dict], tools: list[dict], cancel: threading.Event
    ) -> Iterator[StreamEvent]: ...


class RecordingDisplay:
    """Display sink that only keeps items in memory."""

    def __init__(self):
        self.items: list[dict] = []

    def add_item(self, data: dict, timestamp: float) -> int:
        self.items.append(data)
        return len(self.items) - 1

    def update_item(self, item_id: int, update_fn: Callable[[dict], dict]) -> None:
        self.items[item_id] = update_fn(self.items[item_id])


@dataclass
class TurnResult:
    text: str = ""  # assistant text of the final model round
    tool_results: list[ToolCallResult] = field(default_factory=list)
    cancelled: bool = False
    error: str | None = None
    rounds: int = 0


@dataclass
class _Round:
    """Per-model-call state."""

    text: list[str] = field(default_factory=list)
    pending_text: str = ""
    pending_item: int | None = None
    group_item: int | None = None
    requests: list[ToolCallRequest] = field(default_factory=list)
    results: dict[str, ToolCallResult] = field(default_factory=dict)
    error: str | None = None


class TurnProcessor:
    """Runs turns against a model service, a scheduler and a display sink.

    Display items are dicts with a ``type`` key: ``assistant`` (``text``,
    ``pending``), ``tool_group`` (``tools``: list of entries with
    ``call_id``, ``name``, ``description``, ``status``, ``display``),
    ``info`` and ``error`` (``text``).

    The processor installs its own ``on_start``/``on_update``/``on_output``
    hooks on ``scheduler``. ``confirm`` is asked whenever a tool call needs
    confirmation; without it such calls are denied.
    """

    def __init__(
        self,
        model: ModelService,
        scheduler: Scheduler,
        display: DisplaySink,
        confirm: Callable[[ConfirmationDetails], ConfirmationOutcome] | None = None,
        max_rounds: int = DEFAULT_MAX_ROUNDS,
    ):
        self.model = model
        self.scheduler = scheduler
        self.display = display
        self.confirm = confirm
        self.max_rounds = max_rounds
        self.state = StreamingState.IDLE
        self._round: _Round | None = None
        self._requests: dict[str, ToolCallRequest] = {}

        scheduler.on_start = self._on_tool_start
        scheduler.on_update = self._on_tool_update
        scheduler.on_output = self._on_tool_output

    def run_turn(
        self,
        history: list[dict],
        user_input: str,
        cancel: threading.Event | None = None,
    ) -> TurnResult:
        """Run one turn, appending every message it produces to ``history``.

        Raises:
            ValueError: If ``user_input`` is empty.
        """
        if not user_input or not user_input.strip():
            raise ValueError("Empty query.")
        if cancel is None:
            cancel = threading.Event()

        history.append({"role": "user", "content": user_input})
        result = TurnResult()
        try:
            while True:
                if result.rounds >= self.max_rounds:
                    result.error = f"Stopped after {self.max_rounds} model rounds."
                    self._add("error", result.error)
                    break
                result.rounds += 1
                rnd = self._run_round(history, cancel)
                result.text = "".join(rnd.text)
                result.tool_results.extend(rnd.results.values())

                if cancel.is_set():
                    result.cancelled = True
                    self._add("info", CANCELLED_MESSAGE)
                    break
                if rnd.error is not None:
                    result.error = rnd.error
                    break
                if not rnd.requests:
                    break
        finally:
            self.state = StreamingState.IDLE
            self._round = None
            self._requests.clear()
        return result

    # --- one model round ---

    def _run_round(self, history: list[dict], cancel: threading.Event) -> _Round:
        rnd = self._round = _Round()
        self.state = StreamingState.RESPONDING
        try:
            for event in self.model.send_stream(
                history, self.scheduler.registry.schemas(), cancel
            ):
                if cancel.is_set():
                    break
                self.handle_event(event, cancel)
                if rnd.error is not None:
                    break
        except ModelError as exc:
            logger.warning("model call failed: %s", exc)
            rnd.error = str(exc)
            self._add("error", rnd.error)
        finally:
            self._flush_content()
        self._record_history(history, rnd)
        return rnd

    def handle_event(
        self, event: StreamEvent, cancel: threading.Event | None = None
    ) -> ConfirmationOutcome | None:
        """Route one event. Returns the outcome for confirmation requests."""
        rnd = self._round
        match event:
            case Content(text=text):
                self._append_content(text)
            case ToolCallRequest():
                self._flush_content()
                rnd.requests.append(event)
                self._requests[event.call_id] = event
                self._open_tool_entry(event)
                call = ToolCall(id=event.call_id, name=event.name, args=event.args)
                result = self.scheduler.schedule(call, cancel)
                rnd.results[event.call_id] = result
                self.handle_event(
                    ToolCallResponse(
                        event.call_id, result, result.content if result.is_error else None
                    ),
                    cancel,
                )
            case ToolCallConfirmationRequest(details=details):
                self.state = StreamingState.WAITING_FOR_CONFIRMATION
                try:
                    if self.confirm is None:
                        logger.info("no confirmation handler; denying %s", details.tool_name)
                        return ConfirmationOutcome.DENY
                    return self.confirm(details)
                finally:
                    self.state = StreamingState.RESPONDING
            case ToolCallResponse(call_id=call_id, result=result):
                self._update_tool_entry(
                    call_id, status=result.status.value, display=result.display
                )
            case StreamError(message=message):
                rnd.error = message
                self._add("error", message)
            case Finished(reason=reason):
                logger.debug("model round finished: %s", reason)
        return None

    # --- content buffering ---

    def _append_content(self, text: str) -> None:
        rnd = self._round
        rnd.text.append(text)
        rnd.pending_text += text
        split = find_last_safe_split_point(rnd.pending_text)
        if 0 < split < len(rnd.pending_text):
            before, after = rnd.pending_text[:split], rnd.pending_text[split:]
            self._show_pending(before, pending=False)
            rnd.pending_item = None
            rnd.pending_text = after
            if after:
                self._show_pending(after, pending=True)
        else:
            self._show_pending(rnd.pending_text, pending=True)

    def _show_pending(self, text: str, pending: bool) -> None:
        rnd = self._round
        if rnd.pending_item is None:
            rnd.pending_item = self.display.add_item(
                {"type": "assistant", "text": text, "pending": pending}, time.time()
            )
        else:
            self.display.update_item(
                rnd.pending_item,
                lambda item: {**item, "text": text, "pending": pending},
            )

    def _flush_content(self) -> None:
        rnd = self._round
        if rnd is None:
            return
        if rnd.pending_item is not None:
            self._show_pending(rnd.pending_text, pending=False)
        rnd.pending_item = None
        rnd.pending_text = ""

    # --- tool group ---

    def _open_tool_entry(self, request: ToolCallRequest) -> None:
        rnd = self._round
        entry = {
            "call_id": request.call_id,
            "name": request.name,
            "description": request.name,
            "status": ToolCallStatus.PENDING.value,
            "display": "",
        }
        if rnd.group_item is None:
            rnd.group_item = self.display.add_item(
                {"type": "tool_group", "tools": [entry]}, time.time()
            )
        else:
            self.display.update_item(
                rnd.group_item,
                lambda item: {**item, "tools": item["tools"] + [entry]},
            )

    def _update_tool_entry(self, call_id: str, **changes) -> None:
        rnd = self._round
        if rnd is None or rnd.group_item is None:
            return

        def apply(item: dict) -> dict:
            tools = [
                {**t, **changes} if t["call_id"] == call_id else t
                for t in item["tools"]
            ]
            return {**item, "tools": tools}

        self.display.update_item(rnd.group_item, apply)

    def _on_tool_start(self, call: ToolCall) -> None:
        self._update_tool_entry(call.id, description=call.description)

    def _on_tool_update(self, call: ToolCall) -> None:
        if call.status.terminal:
            # the ToolCallResponse event applies the final state
            return
        self._update_tool_entry(call.id, status=call.status.value)
        if call.status is ToolCallStatus.CONFIRMING and call.confirmation is not None:
            request = self._requests.get(call.id) or ToolCallRequest(
                call.id, call.name, call.args
            )
            outcome = self.handle_event(
                ToolCallConfirmationRequest(request, call.confirmation.details)
            )
            call.confirmation.resolve(outcome or ConfirmationOutcome.DENY)

    def _on_tool_output(self, call: ToolCall, text: str) -> None:
        self._update_tool_entry(call.id, display=text)

    # --- history ---

    def _record_history(self, history: list[dict], rnd: _Round) -> None:
        text = "".join(rnd.text)
        if not rnd.requests:
            if text:
                history.append({"role": "assistant", "content": text})
            return
        history.append(
            {
                "role": "assistant",
                "content": text or None,
                "tool_calls": [
                    {
                        "id": req.call_id,
                        "type": "function",
                        "function": {
                            "name": req.name,
                            "arguments": req.args
                            if isinstance(req.args, str)
                            else json.dumps(req.args),
                        },
                    }
                    for req in rnd.requests
                ],
            }
        )
        for req in rnd.requests:
            result = rnd.results.get(req.call_id)
            history.append(
                {
                    "role": "tool",
                    "tool_call_id": req.call_id,
                    "content": result.content if result else "Tool call did not run.",
                }
            )

    def _add(self, kind: str, text: str) -> int:
        return self.display.add_item({"type": kind, "text": text}, time.time())
