from .report import AgentError
from .session import Result, Session

__all__ = ["AgentError", "Result", "Session"]
