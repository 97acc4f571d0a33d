"""Agent backend implementations."""

from voice_listener.orchestrator.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from voice_listener.orchestrator.backend.cli_backend import AgentRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
]
