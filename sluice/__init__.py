"""sluice: a model-driven agent with confirmed, validated tool execution."""

from .session import Result, Session

__all__ = ["Result", "Session"]
