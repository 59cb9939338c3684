"""Judge verdict models.

The structured payload produced by the second judge pass is validated with
pydantic so malformed backend output is rejected rather than half-applied.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

JudgeStatus = Literal["success", "failure", "timeout"]


class DriftIssue(BaseModel):
    section: str
    description: str
    severity: Literal["critical", "major", "minor"] = "major"


class SpecDrift(BaseModel):
    detected: bool = False
    issues: list[DriftIssue] = Field(default_factory=list)


class CriterionResult(BaseModel):
    criterion: str
    passed: bool
    evidence: str = ""


class AcceptanceVerdict(BaseModel):
    passed: bool = False
    results: list[CriterionResult] = Field(default_factory=list)


class ObservationDecision(BaseModel):
    task_id: str
    action: Literal["promote", "dismiss", "merge"]
    reason: str = ""
    merge_with: str = ""


class ProposedTask(BaseModel):
    title: str
    description: str = ""
    type: Literal["bug", "task", "feature"] = "task"


class JudgePayload(BaseModel):
    """The machine-parseable part of a verdict, as emitted by pass 2."""

    spec_drift: SpecDrift
    acceptance: AcceptanceVerdict
    observations: list[ObservationDecision] = Field(default_factory=list)
    new_tasks: list[ProposedTask] = Field(default_factory=list)


class JudgeResult(JudgePayload):
    status: JudgeStatus = "success"
    last_lines: str = ""
    duration_s: float = 0.0

    @property
    def passed(self) -> bool:
        return self.status == "success" and self.acceptance.passed and not self.spec_drift.detected

    @classmethod
    def failed(cls, status: JudgeStatus, last_lines: str, duration_s: float) -> JudgeResult:
        return cls(
            status=status,
            spec_drift=SpecDrift(),
            acceptance=AcceptanceVerdict(),
            last_lines=last_lines,
            duration_s=duration_s,
        )

    @classmethod
    def from_payload(cls, payload: dict[str, Any], *, last_lines: str, duration_s: float) -> JudgeResult:
        """Validate a pass-2 payload. Raises ``pydantic.ValidationError``."""
        data = JudgePayload.model_validate(payload).model_dump()
        return cls(status="success", last_lines=last_lines, duration_s=duration_s, **data)

    def to_record(self) -> dict[str, Any]:
        record = self.model_dump(mode="json")
        record["passed"] = self.passed
        return record


def judge_json_schema() -> dict[str, Any]:
    return JudgePayload.model_json_schema()
