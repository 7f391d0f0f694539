from __future__ import annotations

import enum
from typing import Iterable, List


class ErrorKind(str, enum.Enum):
    """Closed set of error codes persisted on failed build jobs."""
    SESSION_NOT_FOUND = "SessionNotFound"
    ANALYSIS_REQUIRED = "AnalysisRequired"
    BUILD_ALREADY_IN_PROGRESS = "BuildAlreadyInProgress"
    JOB_NOT_FOUND = "JobNotFound"
    WORKER_LAUNCH_FAILED = "WorkerLaunchFailed"
    WORKSPACE_CREATE_FAILED = "WorkspaceCreateFailed"
    AGENT_FAILED = "AgentFailed"
    MOCK_BUILD_FAILED = "MockBuildFailed"
    GUARDRAIL_DIFF_FAILED = "GuardrailDiffFailed"
    EMPTY_DIFF = "EmptyDiff"
    DENIED_PATH_VIOLATION = "DeniedPathViolation"
    OUTSIDE_ALLOWLIST_VIOLATION = "OutsideAllowlistViolation"
    BUILD_FAILED = "BuildFailed"
    CLICKTHROUGH_FAILED = "ClickthroughFailed"
    INTERNAL_ERROR = "InternalError"


class IterationBuildError(Exception):
    """Base error for the iteration build domain. Carries a kind and a structured payload."""
    kind: ErrorKind = ErrorKind.INTERNAL_ERROR

    def __init__(self, message: str, *, paths: Iterable[str] = (), output: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.paths: List[str] = list(paths)
        self.output = output

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict:
        payload = {"error": self.code, "message": self.message}
        if self.paths:
            payload["paths"] = list(self.paths)
        return payload


# ---------------------------------------------------------------------------
# Preconditions (raised before any subprocess runs)
# ---------------------------------------------------------------------------
class PreconditionError(IterationBuildError):
    pass


class SessionNotFound(PreconditionError):
    kind = ErrorKind.SESSION_NOT_FOUND


class AnalysisRequired(PreconditionError):
    kind = ErrorKind.ANALYSIS_REQUIRED


class BuildAlreadyInProgress(PreconditionError):
    kind = ErrorKind.BUILD_ALREADY_IN_PROGRESS


class JobNotFound(PreconditionError):
    kind = ErrorKind.JOB_NOT_FOUND


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------
class InfrastructureError(IterationBuildError):
    """A required subprocess failed after exhausting retries/fallbacks."""
    pass


class WorkerLaunchFailed(InfrastructureError):
    kind = ErrorKind.WORKER_LAUNCH_FAILED


class WorkspaceCreateFailed(InfrastructureError):
    kind = ErrorKind.WORKSPACE_CREATE_FAILED


class AgentFailed(InfrastructureError):
    kind = ErrorKind.AGENT_FAILED


class MockBuildFailed(InfrastructureError):
    kind = ErrorKind.MOCK_BUILD_FAILED


class GuardrailDiffFailed(InfrastructureError):
    kind = ErrorKind.GUARDRAIL_DIFF_FAILED


# ---------------------------------------------------------------------------
# Policy (agent output violated containment). Never tolerated.
# ---------------------------------------------------------------------------
class PolicyViolation(IterationBuildError):
    pass


class EmptyDiff(PolicyViolation):
    kind = ErrorKind.EMPTY_DIFF


class DeniedPathViolation(PolicyViolation):
    kind = ErrorKind.DENIED_PATH_VIOLATION


class OutsideAllowlistViolation(PolicyViolation):
    kind = ErrorKind.OUTSIDE_ALLOWLIST_VIOLATION


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------
class ValidationFailed(IterationBuildError):
    pass


class BuildFailed(ValidationFailed):
    kind = ErrorKind.BUILD_FAILED


class ClickthroughFailed(ValidationFailed):
    kind = ErrorKind.CLICKTHROUGH_FAILED


class JobTerminated(Exception):
    """Raised inside a worker when its job reached a terminal stage elsewhere (e.g. canceled)."""
    pass
