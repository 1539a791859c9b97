"""Step, job and file-operation models for orchestration runs."""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from patchloop.models.patch_models import VerificationResult
from patchloop.models.report_models import ReflectionResult


class StepStatus(str, Enum):
    """Status of a step within one orchestration run."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ActionType(str, Enum):
    MODIFY = "modify"
    CREATE = "create"
    DELETE = "delete"
    INSPECT = "inspect"


class OperationType(str, Enum):
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class Step(BaseModel):
    """A single planned file operation."""

    model_config = ConfigDict(frozen=False)
    id: str
    file_path: str
    description: str
    action_type: ActionType = ActionType.MODIFY
    priority: int = 0
    dependencies: list[str] = Field(default_factory=list)
    line_hints: list[int] = Field(default_factory=list)
    symbol_hints: list[str] = Field(default_factory=list)
    status: StepStatus = StepStatus.PENDING


class FileOperation(BaseModel):
    """A committed file operation produced by a completed step."""

    model_config = ConfigDict(frozen=False)

    type: OperationType
    file_path: str
    content: str | None = None   # Full content for create/modify
    diff: str | None = None      # Unified diff for modify
    explanation: str = ""


class StepResult(BaseModel):
    model_config = ConfigDict(frozen=False)

    step_id: str
    status: StepStatus
    operations: list[FileOperation] = Field(default_factory=list)
    error: str | None = None
    retry_count: int = 0
    execution_time_ms: int = 0
    verification: VerificationResult | None = None
    reflection: ReflectionResult | None = None


class Job(BaseModel):
    """A schedulable unit of work owned by the job queue."""

    model_config = ConfigDict(frozen=False)

    id: str = Field(default_factory=lambda: f"job-{uuid.uuid4().hex[:12]}")
    job_type: str = "default"
    status: JobStatus = JobStatus.QUEUED
    priority: int = 5
    payload: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    parent_job_id: str | None = None
    child_job_ids: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_cancelled(self) -> bool:
        return self.status == JobStatus.CANCELLED

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class ProgressEvent(BaseModel):
    model_config = ConfigDict(frozen=False)

    phase: str   # step_start | step_generating | step_verifying | step_complete | ...
    step_id: str | None = None
    message: str = ""
    current_step: int = 0
    total_steps: int = 0
    elapsed_ms: int = 0
