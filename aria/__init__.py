"""aria: a terminal coding agent with gated tool calls."""

from .report import AgentError, ConfigError
from .session import Result, Session, SessionState

__all__ = ["AgentError", "ConfigError", "Result", "Session", "SessionState"]
