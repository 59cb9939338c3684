"""Backend interfaces, the shared two-pass judge, and output parsing."""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from pydantic import ValidationError

from specloop.prompts import build_judge_reasoning_prompt, build_judge_structuring_prompt
from specloop.protocol.judge import JudgeResult
from specloop.protocol.models import AgentResult, ProcessResult
from specloop.runner import process

logger = logging.getLogger(__name__)

STRUCTURING_TIMEOUT_S = 120.0

Runner = Callable[..., Awaitable[ProcessResult]]


@dataclass(slots=True)
class SpawnOptions:
    workdir: str
    prompt: str
    timeout_s: float
    system_prompt: str = ""
    env: dict[str, str] = field(default_factory=dict)
    output_format: str = "json"  # json | text
    on_spawn: Callable[[int], None] | None = None


@dataclass(slots=True)
class JudgeRequest:
    workdir: str
    frozen_spec_path: str
    acceptance_path: str
    observation_task_ids: list[str]
    timeout_s: float
    env: dict[str, str] = field(default_factory=dict)


class AgentBackend(Protocol):
    name: str

    async def spawn(self, opts: SpawnOptions) -> AgentResult: ...


class JudgeBackend(Protocol):
    name: str

    async def evaluate(self, request: JudgeRequest) -> JudgeResult: ...


class ProcessBackend:
    """Common plumbing for backends that shell out through the process runner."""

    name = "process"

    def __init__(self, runner: Runner | None = None) -> None:
        self._runner = runner

    async def _run(
        self,
        command: str,
        args: list[str],
        *,
        cwd: str,
        timeout_s: float,
        env: dict[str, str] | None = None,
        on_spawn: Callable[[int], None] | None = None,
    ) -> ProcessResult:
        run = self._runner or process.run_process
        return await run(command, args, cwd=cwd, timeout_s=timeout_s, env=env, on_spawn=on_spawn)


class TwoPassJudge(ProcessBackend):
    """Reason in free text first, then ask for a strict JSON restatement.

    Subclasses supply the two command lines. Pass 2 only runs when pass 1
    exits cleanly within its timeout.
    """

    structuring_timeout_s = STRUCTURING_TIMEOUT_S

    def reasoning_command(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        raise NotImplementedError

    def structuring_command(self, request: JudgeRequest, prompt: str) -> tuple[str, list[str]]:
        raise NotImplementedError

    async def evaluate(self, request: JudgeRequest) -> JudgeResult:
        prompt = build_judge_reasoning_prompt(
            frozen_spec_path=request.frozen_spec_path,
            acceptance_path=request.acceptance_path,
            observation_task_ids=request.observation_task_ids,
        )
        command, args = self.reasoning_command(request, prompt)
        pass1 = await self._run(
            command, args, cwd=request.workdir, timeout_s=request.timeout_s, env=request.env
        )
        if pass1.timed_out or pass1.exit_code != 0:
            logger.info("%s judge pass 1 did not finish cleanly (exit=%s)", self.name, pass1.exit_code)
            return JudgeResult.failed(
                "timeout" if pass1.timed_out else "failure",
                pass1.last_lines,
                pass1.duration_s,
            )

        command, args = self.structuring_command(request, build_judge_structuring_prompt(pass1.last_lines))
        pass2 = await self._run(
            command, args, cwd=request.workdir, timeout_s=self.structuring_timeout_s, env=request.env
        )
        duration = pass1.duration_s + pass2.duration_s
        if pass2.timed_out or pass2.exit_code != 0:
            return JudgeResult.failed(
                "timeout" if pass2.timed_out else "failure",
                f"Structuring pass failed.\n{pass2.last_lines}",
                duration,
            )

        payload = extract_json_object(pass2.last_lines, required_key="acceptance")
        if payload is None:
            return JudgeResult.failed(
                "failure",
                f"No JSON verdict found.\nPass 1:\n{pass1.last_lines}\nPass 2:\n{pass2.last_lines}",
                duration,
            )
        try:
            return JudgeResult.from_payload(payload, last_lines=pass2.last_lines, duration_s=duration)
        except ValidationError as exc:
            return JudgeResult.failed("failure", f"Invalid JSON verdict: {exc}\n{pass2.last_lines}", duration)


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------

_decoder = json.JSONDecoder()

# Keys under which agent CLIs wrap the model's own text or structured output.
_ENVELOPE_KEYS = ("structured_output", "result", "text", "message", "content")


def extract_json_object(output: str, *, required_key: str | None = None) -> dict[str, Any] | None:
    """Return the first JSON object in ``output`` (optionally containing ``required_key``).

    The text may be free prose with an embedded object, a single result
    envelope, or line-delimited event records; envelopes are unwrapped.
    """
    for obj in _iter_objects(output):
        found = _search(obj, required_key, depth=0)
        if found is not None:
            return found
    return None


def _iter_objects(text: str) -> Iterator[dict[str, Any]]:
    idx = text.find("{")
    while idx != -1:
        try:
            obj, end = _decoder.raw_decode(text, idx)
        except json.JSONDecodeError:
            idx = text.find("{", idx + 1)
            continue
        if isinstance(obj, dict):
            yield obj
        idx = text.find("{", end)


def _search(obj: Any, required_key: str | None, *, depth: int) -> dict[str, Any] | None:
    if depth > 4:
        return None
    if isinstance(obj, str):
        for inner in _iter_objects(obj):
            found = _search(inner, required_key, depth=depth + 1)
            if found is not None:
                return found
        return None
    if not isinstance(obj, dict):
        return None
    if required_key is None or required_key in obj:
        return obj
    for key in _ENVELOPE_KEYS:
        if key in obj:
            found = _search(obj[key], required_key, depth=depth + 1)
            if found is not None:
                return found
    # Codex JSONL: {"type": "item.completed", "item": {"type": "agent_message", "text": "..."}}
    if isinstance(obj.get("item"), dict):
        return _search(obj["item"], required_key, depth=depth + 1)
    return None
