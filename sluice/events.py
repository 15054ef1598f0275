"""Events produced by a model stream and consumed by the turn processor."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Union

if TYPE_CHECKING:
    from .scheduler import ToolCallResult
    from .tools import ConfirmationDetails


@dataclass(frozen=True)
class Content:
    """A text delta from the model."""

    text: str


@dataclass(frozen=True)
class ToolCallRequest:
    call_id: str
    name: str
    args: dict = field(default_factory=dict)  # raw str when the JSON was malformed


@dataclass(frozen=True)
class ToolCallResponse:
    call_id: str
    result: "ToolCallResult"
    error: str | None = None


@dataclass(frozen=True)
class ToolCallConfirmationRequest:
    request: ToolCallRequest
    details: "ConfirmationDetails"


@dataclass(frozen=True)
class StreamError:
    """The model service failed mid-stream."""

    message: str


@dataclass(frozen=True)
class Finished:
    reason: str | None = None  # provider finish_reason, e.g. "stop" or "tool_calls"


StreamEvent = Union[
    Content,
    ToolCallRequest,
    ToolCallResponse,
    ToolCallConfirmationRequest,
    StreamError,
    Finished,
]
