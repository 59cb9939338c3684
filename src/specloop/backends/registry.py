"""Backend selection: explicit preference or PATH probing."""

from __future__ import annotations

import logging
import shutil

from specloop.backends import claude, codex
from specloop.backends.base import AgentBackend, JudgeBackend
from specloop.backends.subprocess import SubprocessBackend, SubprocessJudge
from specloop.config.schema import AgentConfig
from specloop.errors import ConfigurationError, ErrorCode

logger = logging.getLogger(__name__)

# Probe order for backend=auto; first binary found on PATH wins.
DETECTION_ORDER: tuple[tuple[str, str, str], ...] = (
    ("claude-code", claude.BINARY, claude.INSTALL_HINT),
    ("codex", codex.BINARY, codex.INSTALL_HINT),
)


def detect_backend(preference: str, command: str = "") -> str:
    """Resolve ``preference`` to a concrete backend name or raise."""
    if preference == "subprocess":
        if not command.strip():
            raise ConfigurationError(
                "Subprocess backend requires agent.command in config",
                code=ErrorCode.BACKEND_UNAVAILABLE,
            )
        return "subprocess"

    for name, binary, hint in DETECTION_ORDER:
        if preference == name:
            if shutil.which(binary) is None:
                raise ConfigurationError(
                    f"{binary} not found in PATH. Install: {hint}",
                    code=ErrorCode.BACKEND_UNAVAILABLE,
                )
            return name

    if preference != "auto":
        raise ConfigurationError(f"Unknown backend: {preference!r}", code=ErrorCode.BACKEND_UNAVAILABLE)

    for name, binary, _ in DETECTION_ORDER:
        if shutil.which(binary) is not None:
            logger.debug("auto-detected backend %s", name)
            return name

    hints = "\n".join(f"  - {binary}: {hint}" for _, binary, hint in DETECTION_ORDER)
    raise ConfigurationError(
        "No supported agent CLI found in PATH. Install one of:\n"
        f"{hints}\n"
        "or set agent.backend: subprocess with agent.command.",
        code=ErrorCode.BACKEND_UNAVAILABLE,
    )


def create_agent_backend(cfg: AgentConfig) -> AgentBackend:
    name = detect_backend(cfg.backend, cfg.command)
    if name == "claude-code":
        return claude.ClaudeCodeBackend()
    if name == "codex":
        return codex.CodexBackend()
    return SubprocessBackend(cfg.command)


def create_judge_backend(cfg: AgentConfig) -> JudgeBackend:
    name = detect_backend(cfg.backend, cfg.command)
    if name == "claude-code":
        return claude.ClaudeCodeJudge()
    if name == "codex":
        return codex.CodexJudge()
    return SubprocessJudge(cfg.command)
