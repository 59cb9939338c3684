"""Specloop error hierarchy.

Every fatal condition carries a stable error code. The code determines the
category, and the category determines the process exit code.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCategory(StrEnum):
    """Category of error for classification and exit-code mapping."""

    CONFIGURATION = "configuration"
    PRECONDITION = "precondition"
    GRAPH = "graph"
    INTEGRITY = "integrity"
    RUNTIME = "runtime"
    PARTIAL = "partial"


class ErrorCode(StrEnum):
    SPEC_NOT_FOUND = "E_SPEC_NOT_FOUND"
    CONFIG_INVALID = "E_CONFIG_INVALID"
    BACKEND_UNAVAILABLE = "E_BACKEND_UNAVAILABLE"
    RUN_LOCKED = "E_RUN_LOCKED"
    TASK_SCOPE_AMBIGUOUS = "E_TASK_SCOPE_AMBIGUOUS"
    ACCEPTANCE_MISSING = "E_ACCEPTANCE_MISSING"
    RUN_NOT_FOUND = "E_RUN_NOT_FOUND"
    RUN_TERMINAL = "E_RUN_TERMINAL"
    GRAPH_CYCLE = "E_GRAPH_CYCLE"
    DEADLOCK = "E_DEADLOCK"
    EXTERNAL_BLOCKED = "E_EXTERNAL_BLOCKED"
    DECOMPOSE_FAILED = "E_DECOMPOSE_FAILED"
    TASK_STORE_FAILED = "E_TASK_STORE_FAILED"
    SPEC_HASH_MISMATCH = "E_SPEC_HASH_MISMATCH"
    CHECKPOINT_CORRUPT = "E_CHECKPOINT_CORRUPT"
    MAX_ITERATIONS = "E_MAX_ITERATIONS"


EXIT_SUCCESS = 0
EXIT_INTERRUPTED = 130

EXIT_CODES: dict[ErrorCategory, int] = {
    ErrorCategory.CONFIGURATION: 2,
    ErrorCategory.PRECONDITION: 3,
    ErrorCategory.INTEGRITY: 3,
    ErrorCategory.GRAPH: 4,
    ErrorCategory.RUNTIME: 4,
    ErrorCategory.PARTIAL: 5,
}

_CODE_CATEGORIES: dict[ErrorCode, ErrorCategory] = {
    ErrorCode.SPEC_NOT_FOUND: ErrorCategory.CONFIGURATION,
    ErrorCode.CONFIG_INVALID: ErrorCategory.CONFIGURATION,
    ErrorCode.BACKEND_UNAVAILABLE: ErrorCategory.CONFIGURATION,
    ErrorCode.RUN_LOCKED: ErrorCategory.PRECONDITION,
    ErrorCode.TASK_SCOPE_AMBIGUOUS: ErrorCategory.PRECONDITION,
    ErrorCode.ACCEPTANCE_MISSING: ErrorCategory.PRECONDITION,
    ErrorCode.RUN_NOT_FOUND: ErrorCategory.PRECONDITION,
    ErrorCode.RUN_TERMINAL: ErrorCategory.PRECONDITION,
    ErrorCode.GRAPH_CYCLE: ErrorCategory.GRAPH,
    ErrorCode.DEADLOCK: ErrorCategory.GRAPH,
    ErrorCode.EXTERNAL_BLOCKED: ErrorCategory.GRAPH,
    ErrorCode.DECOMPOSE_FAILED: ErrorCategory.RUNTIME,
    ErrorCode.TASK_STORE_FAILED: ErrorCategory.RUNTIME,
    ErrorCode.SPEC_HASH_MISMATCH: ErrorCategory.INTEGRITY,
    ErrorCode.CHECKPOINT_CORRUPT: ErrorCategory.INTEGRITY,
    ErrorCode.MAX_ITERATIONS: ErrorCategory.PARTIAL,
}


class OrchestratorError(Exception):
    """Base error for all fatal orchestrator conditions."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.category = _CODE_CATEGORIES[code]
        self.details: dict[str, Any] = details or {}

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self.category]

    def to_payload(self) -> dict[str, Any]:
        """Machine-readable error envelope used by ``--json`` output."""
        error: dict[str, Any] = {
            "code": str(self.code),
            "category": str(self.category),
            "message": str(self),
            "exit_code": self.exit_code,
        }
        if self.details:
            error["details"] = self.details
        return {"ok": False, "error": error}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, code={self.code!r})"


class ConfigurationError(OrchestratorError):
    """Missing input, invalid config or unavailable backend."""

    def __init__(self, message: str, *, code: ErrorCode = ErrorCode.CONFIG_INVALID, **kwargs: Any) -> None:
        super().__init__(message, code=code, **kwargs)


class PreconditionError(OrchestratorError):
    """Run locked, ambiguous scope, missing acceptance cache and similar."""


class GraphError(OrchestratorError):
    """Dependency cycles and unschedulable deadlocks."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.GRAPH_CYCLE,
        cycles: list[list[str]] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, code=code, **kwargs)
        self.cycles = cycles or []


class IntegrityError(OrchestratorError):
    """Frozen spec drift or an unreadable checkpoint. Always fatal."""


class RuntimeOrchestrationError(OrchestratorError):
    """Failure of an orchestrator-owned step such as decomposition."""


class IterationLimitError(OrchestratorError):
    """The judge never passed within the configured iteration budget."""

    def __init__(self, message: str, *, iterations: int) -> None:
        super().__init__(message, code=ErrorCode.MAX_ITERATIONS, details={"iterations": iterations})
        self.iterations = iterations
