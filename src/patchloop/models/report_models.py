"""Report models for reflection, consistency and structure analysis."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from patchloop.models.patch_models import Patch


class IssueKind(str, Enum):
    SYNTAX = "syntax"
    IMPORT = "import"
    EXPORT = "export"
    UNUSED = "unused"
    STYLE = "style"
    LOGIC = "logic"
    CONSISTENCY = "consistency"
    GOAL_MISMATCH = "goal_mismatch"


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueLocation(BaseModel):
    model_config = ConfigDict(frozen=True)

    file: str
    line: int | None = None


class ReflectionIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: IssueKind
    severity: IssueSeverity
    location: IssueLocation | None = None
    message: str
    suggested_fix: str | None = None


class ReflectionResult(BaseModel):
    """Verdict of one reflection round over a patched file."""

    model_config = ConfigDict(frozen=False)

    passed: bool
    score: int                                   # 0-100
    issues: list[ReflectionIssue] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    requires_revision: bool = False
    revised_patch: Patch | None = None           # Set when a fix was applied
    patched_content: str = ""
    iterations: int = 1
    skipped_passes: list[str] = Field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == IssueSeverity.ERROR)


class ConsistencyIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str                    # "import" | "patch_failed"
    importer: str | None = None  # File that imports the missing symbol
    exporter: str                # File that no longer exports it (or failed patch target)
    symbol: str | None = None
    description: str


class ConsistencyReport(BaseModel):
    model_config = ConfigDict(frozen=False)

    consistent: bool             # True if no issues
    issues: list[ConsistencyIssue] = Field(default_factory=list)
    files_checked: int = 0
    checked_at: datetime = Field(default_factory=datetime.now)


class Anomaly(BaseModel):
    model_config = ConfigDict(frozen=False)

    kind: str                    # "file_too_long" | "circular_dependency"
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class ReflectionContext(BaseModel):
    """Everything the reflection passes look at for one patched file."""

    model_config = ConfigDict(frozen=False)

    goal: str = ""
    file_path: str
    original_content: str
    patched_content: str
    patch: Patch
    all_files: dict[str, str] = Field(default_factory=dict)  # path -> current content
