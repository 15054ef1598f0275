"""Exception types shared across sluice."""


class AgentError(Exception):
    """Raised by the turn loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad key types, etc.)."""


class ModelError(AgentError):
    """Raised when the model service fails to produce a stream."""


class ContextOverflowError(ModelError):
    """Raised when the model call fails due to context window overflow."""
