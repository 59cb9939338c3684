"""Claude Code CLI backend."""

from __future__ import annotations

import json

from specloop.backends.base import JudgeRequest, ProcessBackend, SpawnOptions, TwoPassJudge
from specloop.protocol.judge import judge_json_schema
from specloop.protocol.models import AgentResult

BINARY = "claude"
INSTALL_HINT = "npm install -g @anthropic-ai/claude-code"


class ClaudeCodeBackend(ProcessBackend):
    name = "claude-code"

    async def spawn(self, opts: SpawnOptions) -> AgentResult:
        args = ["-p", opts.prompt, "--dangerously-skip-permissions"]
        if opts.output_format != "text":
            args.extend(["--output-format", "json"])
        if opts.system_prompt:
            args.extend(["--append-system-prompt", opts.system_prompt])
        result = await self._run(
            BINARY,
            args,
            cwd=opts.workdir,
            timeout_s=opts.timeout_s,
            env=opts.env,
            on_spawn=opts.on_spawn,
        )
        return AgentResult.from_process(result)


class ClaudeCodeJudge(TwoPassJudge):
    name = "claude-code"

    def reasoning_command(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        return BINARY, ["-p", prompt, "--dangerously-skip-permissions"]

    def structuring_command(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        return BINARY, [
            "-p",
            prompt,
            "--output-format",
            "json",
            "--json-schema",
            json.dumps(judge_json_schema()),
            "--dangerously-skip-permissions",
        ]
