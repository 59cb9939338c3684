"""Shared test helpers for the specloop test suite."""

from __future__ import annotations

from tests.helpers.fakes import (
    ACCEPTANCE_TEXT,
    FakeAgentBackend,
    FakeJudgeBackend,
    FakeTaskStore,
    FakeWorktreeManager,
    verdict,
)

__all__ = [
    "ACCEPTANCE_TEXT",
    "FakeAgentBackend",
    "FakeJudgeBackend",
    "FakeTaskStore",
    "FakeWorktreeManager",
    "verdict",
]
