"""Prompt assembly for every agent role the orchestrator spawns."""

from __future__ import annotations

import logging
from pathlib import Path

from specloop.protocol.models import Task

logger = logging.getLogger(__name__)

OBSERVATION_LABEL = "observation"


def run_label(run_id: str) -> str:
    return f"specloop-run:{run_id}"


def build_coding_prompt(
    task: Task,
    *,
    dependencies: list[str],
    frozen_spec: str,
    run_id: str,
    target_branch: str,
    store_command: str,
) -> str:
    deps = "\n".join(f"- {d}" for d in dependencies) if dependencies else "None"
    return f"""You are a coding agent in an unattended pipeline. Work ONLY on the task below.

## Your Task

**ID**: {task.id}
**Title**: {task.title}
**Type**: {task.type}
**Priority**: P{task.priority}
**Depends on**:
{deps}

**Description**: {task.description or "See the specification for details."}

## Specification

{frozen_spec}

## Completion Checklist

Do ALL of the following before you exit:

1. Implement the task, with tests.
2. Run the tests you wrote or touched.
3. Run the project's type checker, build and linter (whatever this repository uses).
4. Commit, then publish to the shared branch:
   ```
   git fetch origin {target_branch}
   git rebase origin/{target_branch}
   git push origin HEAD:{target_branch}
   ```
   If the push is rejected as non-fast-forward, fetch, rebase and push again (up to 3 attempts).
5. Close the task: `{store_command} close {task.id} --reason="<one-line summary>"`
6. Sync: `{store_command} sync`

## Out-of-scope Findings

If you notice a problem outside this task, record it and move on:
```
{store_command} create "Observation: <what you saw>" --type=task --label={OBSERVATION_LABEL} --label={run_label(run_id)}
```

## Do Not

- Work on any other task.
- Fix tests broken by other agents; a maintenance agent handles that.
- Look for or read evaluation criteria.
- Edit the specification.
"""


def build_maintenance_prompt(*, target_branch: str, task_id: str, store_command: str) -> str:
    close_step = (
        f"`{store_command} close {task_id} --reason=\"Fixed breakage\"` then `{store_command} sync`"
        if task_id
        else f"`{store_command} sync`"
    )
    return f"""You are a maintenance agent. Repair breakage introduced by recently merged work.

## Steps

1. Update to the latest shared branch:
   ```
   git fetch origin {target_branch}
   git rebase origin/{target_branch}
   ```
2. Run the full test suite, build, type checker and linter, even if you expect them to pass.
3. Fix failures only: merge regressions, build errors, interface mismatches, broken imports.
4. Commit as "chore: fix test/build breakage (maintenance)".
5. Push: `git push origin HEAD:{target_branch}` (fetch, rebase and retry if rejected).
6. Close your tracking task: {close_step}

## Do Not

- Add features or change behaviour.
- Refactor working code.
- Edit the specification.
- Create observation tasks.
"""


def build_decomposition_prompt(*, frozen_spec: str, run_id: str, store_command: str) -> str:
    return f"""You are a decomposition agent. Turn the specification below into implementation tasks.

## Specification

{frozen_spec}

## Instructions

1. Split the specification into small tasks, each finishable by one agent in one session.
2. Create each task:
   `{store_command} create "<title>" --type=task --label={run_label(run_id)}`
3. Where order matters, record it: `{store_command} dep add <task-id> <depends-on-id>`
4. Do not create cycles.
5. When finished: `{store_command} sync`
"""


def build_acceptance_prompt(frozen_spec: str) -> str:
    return f"""Write acceptance criteria for the specification below.

## Specification

{frozen_spec}

## Output

Produce exactly three clearly headed sections:

### User Stories
Given/When/Then stories that can be checked by reading the code and its tests.

### Edge Cases
Boundary conditions, error paths and concurrency situations a naive implementation would miss.

### Negative Tests
Things that must NOT happen: security problems, data-integrity violations, wrong behaviour.
"""


def build_judge_reasoning_prompt(
    *,
    frozen_spec_path: str,
    acceptance_path: str,
    observation_task_ids: list[str],
) -> str:
    observations = ""
    if observation_task_ids:
        observations = (
            "\n\n## Observation Tasks\n\n"
            f"Triage each of these: {', '.join(observation_task_ids)}\n"
            "Decide promote (becomes implementation work), dismiss, or merge with one of your findings."
        )
    return f"""You are an independent judge. Evaluate this checkout against its specification.

## Specification
{frozen_spec_path}

## Acceptance Criteria
{acceptance_path}

## Method

1. Explore the code (read files, search, inspect git log and diffs, run tests).
2. Compare the implementation with every section of the specification.
3. Decide each acceptance criterion, citing files and lines as evidence.
4. Report spec drift: missing behaviour, wrong behaviour, unrequested behaviour.

You are read-only. Do NOT modify, create or delete any file.

Write a detailed report in prose.{observations}"""


def build_judge_structuring_prompt(reasoning: str) -> str:
    return f"""Convert the evaluation below into one JSON object.

## Evaluation
{reasoning}

## Shape
{{
  "spec_drift": {{
    "detected": boolean,
    "issues": [{{"section": string, "description": string, "severity": "critical"|"major"|"minor"}}]
  }},
  "acceptance": {{
    "passed": boolean,
    "results": [{{"criterion": string, "passed": boolean, "evidence": string}}]
  }},
  "observations": [{{"task_id": string, "action": "promote"|"dismiss"|"merge", "reason": string, "merge_with": string}}],
  "new_tasks": [{{"title": string, "description": string, "type": "bug"|"task"|"feature"}}]
}}

Output ONLY the JSON object."""


def load_guidelines(guidelines_dir: Path, names: list[str]) -> str:
    """Concatenate named guideline files into one system prompt. Missing names are skipped."""
    parts: list[str] = []
    for name in names:
        path = guidelines_dir / f"{name}.md"
        try:
            content = path.read_text(encoding="utf-8")
        except OSError:
            logger.info("guideline %s not found at %s, skipping", name, path)
            continue
        parts.append(f"## Guideline: {name}\n\n{content}")
    return "\n\n".join(parts)
