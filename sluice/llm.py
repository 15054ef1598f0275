"""Streaming model calls through LiteLLM, normalized to StreamEvents."""

import json
import logging
import re
import threading
import uuid
from typing import Callable, Iterator

from .errors import ContextOverflowError, ModelError
from .events import Content, Finished, StreamError, StreamEvent, ToolCallRequest

logger = logging.getLogger(__name__)

PROVIDERS = ("lmstudio", "openrouter", "generic")

_CONTEXT_OVERFLOW_RE = re.compile(
    r"context.{0,10}(length|window|limit)"
    r"|maximum.{0,10}(context|token)"
    r"|token.{0,10}limit"
    r"|exceed.{0,10}(context|token|max)",
    re.IGNORECASE,
)


def resolve_model(
    provider: str, model_id: str, base_url: str | None, api_key: str | None
) -> tuple[str, dict]:
    """Map (provider, model) to a LiteLLM model string and extra kwargs."""
    if provider == "lmstudio":
        base = base_url or "http://127.0.0.1:1234"
        return f"openai/{model_id}", {"api_base": f"{base}/v1", "api_key": "lm-studio"}
    if provider == "openrouter":
        # Strip only a doubled prefix; "openrouter/free" is a real model id.
        bare_id = (
            model_id[len("openrouter/") :]
            if model_id.startswith("openrouter/openrouter/")
            else model_id
        )
        kwargs = {"api_key": api_key}
        if base_url:
            kwargs["api_base"] = base_url
        return f"openrouter/{bare_id}", kwargs
    if provider == "generic":
        kwargs = {}
        if api_key:
            kwargs["api_key"] = api_key
        if base_url:
            kwargs["api_base"] = base_url
        return model_id, kwargs
    raise ModelError(f"unknown provider {provider!r}")


def _classify(exc: Exception) -> ModelError:
    import litellm

    if isinstance(exc, litellm.ContextWindowExceededError):
        return ContextOverflowError("context window exceeded (typed)")
    if isinstance(exc, litellm.BadRequestError) and _CONTEXT_OVERFLOW_RE.search(
        str(exc)
    ):
        return ContextOverflowError(f"context window exceeded (inferred): {exc}")
    return ModelError(f"LLM call failed: {exc}")


class LiteLLMService:
    """Model service backed by ``litellm.completion(stream=True)``.

    ``completion`` may be replaced (tests pass a fake that returns a list of
    chunks).
    """

    def __init__(
        self,
        model: str,
        provider: str = "lmstudio",
        base_url: str | None = None,
        api_key: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        completion: Callable | None = None,
    ):
        self.model_str, self._extra = resolve_model(provider, model, base_url, api_key)
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self._completion = completion

    def _call(self, **kwargs):
        if self._completion is not None:
            return self._completion(**kwargs)
        import litellm

        litellm.suppress_debug_info = True
        return litellm.completion(**kwargs)

    def send_stream(
        self,
        history: list[dict],
        tools: list[dict],
        cancel: threading.Event | None = None,
    ) -> Iterator[StreamEvent]:
        """Yield Content deltas, then assembled ToolCallRequests, then Finished.

        Raises:
            ModelError: If the request itself fails (ContextOverflowError
                when the prompt does not fit). Failures after streaming has
                started are yielded as StreamError instead.
        """
        kwargs = dict(model=self.model_str, messages=history, stream=True, **self._extra)
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if self.temperature is not None:
            kwargs["temperature"] = self.temperature
        if self.max_output_tokens is not None:
            kwargs["max_tokens"] = self.max_output_tokens

        logger.debug("calling %s with %d messages", self.model_str, len(history))
        try:
            response = self._call(**kwargs)
        except Exception as exc:
            raise _classify(exc) from exc

        # index -> {"id", "name", "arguments"}; fragments arrive split by index
        pending: dict[int, dict] = {}
        finish_reason = None
        try:
            for chunk in response:
                if cancel is not None and cancel.is_set():
                    _close(response)
                    return
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                text = getattr(delta, "content", None)
                if text:
                    yield Content(text)
                for tc in getattr(delta, "tool_calls", None) or []:
                    slot = pending.setdefault(
                        tc.index or 0, {"id": None, "name": "", "arguments": ""}
                    )
                    if tc.id:
                        slot["id"] = tc.id
                    fn = getattr(tc, "function", None)
                    if fn is not None:
                        if fn.name:
                            slot["name"] += fn.name
                        if fn.arguments:
                            slot["arguments"] += fn.arguments
                if choice.finish_reason:
                    finish_reason = choice.finish_reason
        except Exception as exc:
            logger.warning("model stream failed: %s", exc)
            yield StreamError(str(_classify(exc)))
            return

        if cancel is not None and cancel.is_set():
            return
        for index in sorted(pending):
            slot = pending[index]
            yield ToolCallRequest(
                call_id=slot["id"] or f"call_{uuid.uuid4().hex[:12]}",
                name=slot["name"],
                args=_parse_arguments(slot["arguments"]),
            )
        yield Finished(finish_reason)


def _parse_arguments(raw: str):
    """Decode tool arguments; malformed JSON is passed through as the raw string."""
    if not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("model sent malformed tool arguments: %r", raw[:200])
        return raw


def _close(response) -> None:
    close = getattr(response, "close", None)
    if close is not None:
        try:
            close()
        except Exception as exc:
            logger.debug("closing model stream failed: %s", exc)
