"""Reasoning control layer for a tool-using coding agent."""

from .orchestrator import execute_reasoning_cycle
from .report import AgentError, ConfigError
from .session import Result, Session

__all__ = ["AgentError", "ConfigError", "Result", "Session", "execute_reasoning_cycle"]
