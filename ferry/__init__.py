"""ferry: a terminal chat agent that lets a hosted model use local tools."""

from .report import AgentError, ConfigError, ModelRequestError
from .session import Result, Session

__all__ = ["AgentError", "ConfigError", "ModelRequestError", "Result", "Session"]
