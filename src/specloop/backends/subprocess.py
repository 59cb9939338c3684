"""User-configured command line backend.

``agent.command`` is split shell-style; the prompt is appended as the last
argument. The same command serves as the judge for both passes.
"""

from __future__ import annotations

import shlex

from specloop.backends.base import JudgeRequest, ProcessBackend, Runner, SpawnOptions, TwoPassJudge
from specloop.errors import ConfigurationError
from specloop.protocol.models import AgentResult


def split_command(command: str) -> list[str]:
    try:
        parts = shlex.split(command)
    except ValueError as exc:
        raise ConfigurationError(f"agent.command cannot be parsed: {exc}") from exc
    if not parts:
        raise ConfigurationError("agent.command is empty")
    return parts


class SubprocessBackend(ProcessBackend):
    name = "subprocess"

    def __init__(self, command: str, runner: Runner | None = None) -> None:
        super().__init__(runner)
        self._argv = split_command(command)

    async def spawn(self, opts: SpawnOptions) -> AgentResult:
        prompt = f"{opts.system_prompt}\n\n{opts.prompt}" if opts.system_prompt else opts.prompt
        result = await self._run(
            self._argv[0],
            [*self._argv[1:], prompt],
            cwd=opts.workdir,
            timeout_s=opts.timeout_s,
            env=opts.env,
            on_spawn=opts.on_spawn,
        )
        return AgentResult.from_process(result)


class SubprocessJudge(TwoPassJudge):
    name = "subprocess"

    def __init__(self, command: str, runner: Runner | None = None) -> None:
        super().__init__(runner)
        self._argv = split_command(command)

    def reasoning_command(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        return self._argv[0], [*self._argv[1:], prompt]

    def structuring_command(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        return self._argv[0], [*self._argv[1:], prompt]
