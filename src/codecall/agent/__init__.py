"""Agent CLI plumbing — stream parsing, process control and discovery."""

from codecall.agent.models import AgentInstance, generate_agent_id
from codecall.agent.process import (
    ProcessController,
    ProcessHandle,
    ProcessListener,
    build_context_prompt,
)
from codecall.agent.resolver import ExecutableResolver
from codecall.agent.stream import JSONLineParser, StreamEvent, parse_event

__all__ = [
    "AgentInstance",
    "ExecutableResolver",
    "JSONLineParser",
    "ProcessController",
    "ProcessHandle",
    "ProcessListener",
    "StreamEvent",
    "build_context_prompt",
    "generate_agent_id",
    "parse_event",
]
