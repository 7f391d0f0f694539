"""
Build Job Domain Model

A BuildJob is one attempt to produce one iteration of the demo application.
It is created queued, advanced by the worker one pipeline stage at a time,
and frozen once it reaches a terminal stage. A successful job leaves behind
an immutable IterationArtifact on the owning session.

Records serialize with camelCase keys because the session blob is shared
with the web front end.
"""
from __future__ import annotations

import enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BuildStage(str, enum.Enum):
    """Build job lifecycle states, in pipeline order."""
    QUEUED = "queued"
    SPECIFYING = "specifying"    # Iteration spec written
    PROMPTING = "prompting"      # Worktree provisioned, instruction rendered
    CODING = "coding"            # External agent running
    GUARDRAILS = "guardrails"    # Diff checked against allow/deny policy
    VALIDATING = "validating"    # Build + clickthrough
    LAUNCHING = "launching"      # Preview server starting
    READY = "ready"
    FAILED = "failed"
    CANCELED = "canceled"


PIPELINE_ORDER: List[BuildStage] = [
    BuildStage.QUEUED,
    BuildStage.SPECIFYING,
    BuildStage.PROMPTING,
    BuildStage.CODING,
    BuildStage.GUARDRAILS,
    BuildStage.VALIDATING,
    BuildStage.LAUNCHING,
    BuildStage.READY,
]

TERMINAL_STAGES = frozenset({BuildStage.READY, BuildStage.FAILED, BuildStage.CANCELED})


def is_terminal(stage: BuildStage) -> bool:
    return BuildStage(stage) in TERMINAL_STAGES


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=False)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class DiffSummary(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)
    files_changed: int = 0
    insertions: int = 0
    deletions: int = 0


class ValidatorOutcome(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)
    ready_to_show: bool = False
    video_path: Optional[str] = None
    screenshot_path: Optional[str] = None
    warning_code: Optional[str] = None


class BuildJob(_Record):
    id: str
    session_id: str
    iteration_number: int
    stage: BuildStage = BuildStage.QUEUED
    status_message: str = "Queued build job."

    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    worker_pid: Optional[int] = None

    # Workspace
    worktree_path: Optional[str] = None
    branch_name: Optional[str] = None
    base_commit: Optional[str] = None
    log_path: Optional[str] = None
    prompt_path: Optional[str] = None
    agent_output_path: Optional[str] = None
    agent_model: Optional[str] = None

    # Specs
    spec_product_path: Optional[str] = None
    spec_tech_path: Optional[str] = None
    spec_iteration_path: Optional[str] = None

    # Results
    diff_files_changed: Optional[int] = None
    diff_insertions: Optional[int] = None
    diff_deletions: Optional[int] = None
    launch_url: Optional[str] = None
    validator_ready_to_show: bool = False
    validator_video_path: Optional[str] = None
    validator_screenshot_path: Optional[str] = None
    warning_codes: List[str] = Field(default_factory=list)

    # Failure
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    error_paths: List[str] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.stage)

    def diff_summary(self) -> DiffSummary:
        return DiffSummary(
            files_changed=self.diff_files_changed or 0,
            insertions=self.diff_insertions or 0,
            deletions=self.diff_deletions or 0,
        )


class IterationArtifact(_Record):
    """Immutable record of a successfully built iteration."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)
    id: str
    session_id: str
    iteration_number: int
    created_at: str
    worktree_path: str
    branch_name: str
    launch_url: str
    prompt_path: Optional[str] = None
    historian_path: Optional[str] = None
    validator: ValidatorOutcome = Field(default_factory=ValidatorOutcome)
    diff_summary: DiffSummary = Field(default_factory=DiffSummary)


class ValidatedFeedback(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")
    text: str = ""
    chunk_id: Optional[str] = None
    confidence: Optional[str] = None


class SessionSpecs(_Record):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")
    generated_at: Optional[str] = None
    product_spec_path: Optional[str] = None
    tech_spec_path: Optional[str] = None


class Session(_Record):
    """
    The slice of a session record the build orchestrator reads and writes.
    Unknown fields (intake, transcript, script, ...) are preserved untouched.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")
    id: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    revision: int = 0
    analysis: Optional[Dict[str, Any]] = None
    validated_feedback: List[ValidatedFeedback] = Field(default_factory=list)
    specs: Optional[SessionSpecs] = None
    build_jobs: List[BuildJob] = Field(default_factory=list)
    active_build_job_id: Optional[str] = None
    iterations: List[IterationArtifact] = Field(default_factory=list)

    def get_job(self, job_id: str) -> Optional[BuildJob]:
        for job in self.build_jobs:
            if job.id == job_id:
                return job
        return None

    def active_job(self) -> Optional[BuildJob]:
        if not self.active_build_job_id:
            return None
        return self.get_job(self.active_build_job_id)

    def next_iteration_number(self) -> int:
        claimed = max((job.iteration_number for job in self.build_jobs), default=0)
        return max(len(self.iterations), claimed) + 1

    def validated_text(self) -> str:
        if not self.validated_feedback:
            return ""
        return self.validated_feedback[0].text or ""

    def replace_job(self, job: BuildJob) -> None:
        self.build_jobs = [job if entry.id == job.id else entry for entry in self.build_jobs]

    def release_active(self, job_id: str) -> None:
        if self.active_build_job_id == job_id:
            self.active_build_job_id = None
