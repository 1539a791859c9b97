"""Data models for patchloop."""

from patchloop.models.patch_models import (
    ApplyResult,
    Hunk,
    Patch,
    VerificationResult,
    content_checksum,
)
from patchloop.models.report_models import (
    Anomaly,
    ConsistencyIssue,
    ConsistencyReport,
    IssueKind,
    IssueLocation,
    IssueSeverity,
    ReflectionContext,
    ReflectionIssue,
    ReflectionResult,
)
from patchloop.models.schemas import FileEntry, ImportBinding, ModuleSymbols
from patchloop.models.task_models import (
    ActionType,
    FileOperation,
    Job,
    JobStatus,
    OperationType,
    ProgressEvent,
    Step,
    StepResult,
    StepStatus,
)

__all__ = [
    "ActionType",
    "Anomaly",
    "ApplyResult",
    "ConsistencyIssue",
    "ConsistencyReport",
    "FileEntry",
    "FileOperation",
    "Hunk",
    "ImportBinding",
    "IssueKind",
    "IssueLocation",
    "IssueSeverity",
    "Job",
    "JobStatus",
    "ModuleSymbols",
    "OperationType",
    "Patch",
    "ProgressEvent",
    "ReflectionContext",
    "ReflectionIssue",
    "ReflectionResult",
    "Step",
    "StepResult",
    "StepStatus",
    "VerificationResult",
    "content_checksum",
]
