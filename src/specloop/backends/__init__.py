"""Agent and judge backends, one pair per supported agent CLI."""

from specloop.backends.base import AgentBackend, JudgeBackend, JudgeRequest, SpawnOptions
from specloop.backends.registry import create_agent_backend, create_judge_backend, detect_backend

__all__ = [
    "AgentBackend",
    "JudgeBackend",
    "JudgeRequest",
    "SpawnOptions",
    "create_agent_backend",
    "create_judge_backend",
    "detect_backend",
]
