"""OpenAI Codex CLI backend."""

from __future__ import annotations

from specloop.backends.base import JudgeRequest, ProcessBackend, SpawnOptions, TwoPassJudge
from specloop.protocol.models import AgentResult

BINARY = "codex"
INSTALL_HINT = "npm install -g @openai/codex"


class CodexBackend(ProcessBackend):
    name = "codex"

    async def spawn(self, opts: SpawnOptions) -> AgentResult:
        # codex exec has no system-prompt flag
        prompt = f"{opts.system_prompt}\n\n{opts.prompt}" if opts.system_prompt else opts.prompt
        args = [
            "exec",
            prompt,
            "--cd",
            opts.workdir,
            "--dangerously-bypass-approvals-and-sandbox",
            "--ephemeral",
        ]
        if opts.output_format != "text":
            args.append("--json")
        result = await self._run(
            BINARY,
            args,
            cwd=opts.workdir,
            timeout_s=opts.timeout_s,
            env=opts.env,
            on_spawn=opts.on_spawn,
        )
        return AgentResult.from_process(result)


class CodexJudge(TwoPassJudge):
    name = "codex"

    def _read_only(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        return BINARY, [
            "exec",
            prompt,
            "--cd",
            request.workdir,
            "--sandbox",
            "read-only",
            "--full-auto",
            "--ephemeral",
        ]

    def reasoning_command(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        return self._read_only(request, prompt)

    def structuring_command(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        return self._read_only(request, prompt)
