"""Models describing a proposed edit to a single file."""

import hashlib
import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_CONTEXT_LINES = 3


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:8]}"


def content_checksum(content: str) -> str:
    """Return the sha256 hex digest used to pin a patch to its base content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class Hunk(BaseModel):
    """A contiguous line-range replacement.

    start_line/end_line are 1-based and inclusive, measured against the
    content the patch was authored for. A hunk with no old_lines inserts
    new_lines before start_line and has end_line == start_line - 1.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("hunk"))
    start_line: int
    end_line: int
    old_lines: list[str] = Field(default_factory=list)
    new_lines: list[str] = Field(default_factory=list)
    context_before: list[str] = Field(default_factory=list)
    context_after: list[str] = Field(default_factory=list)

    @field_validator("context_before")
    @classmethod
    def _trim_context_before(cls, value: list[str]) -> list[str]:
        # Keep the lines nearest the change
        return value[-MAX_CONTEXT_LINES:] if value else value

    @field_validator("context_after")
    @classmethod
    def _trim_context_after(cls, value: list[str]) -> list[str]:
        return value[:MAX_CONTEXT_LINES]

    @property
    def is_insertion(self) -> bool:
        return not self.old_lines

    @property
    def line_delta(self) -> int:
        """Net change in file length caused by this hunk."""
        return len(self.new_lines) - len(self.old_lines)


class Patch(BaseModel):
    """An ordered set of hunks for one file plus lifecycle metadata."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: _new_id("patch"))
    file_path: str
    hunks: list[Hunk] = Field(default_factory=list)
    description: str = ""
    verified: bool = False
    applied: bool = False
    applied_at: datetime | None = None
    original_checksum: str | None = None  # sha256 of the base content, if known

    @field_validator("file_path")
    @classmethod
    def _posix_path(cls, value: str) -> str:
        return value.replace("\\", "/")

    def mark_verified(self) -> "Patch":
        return self.model_copy(update={"verified": True})

    def mark_applied(self, when: datetime | None = None) -> "Patch":
        return self.model_copy(
            update={"applied": True, "applied_at": when or datetime.now()}
        )

    def matches_base(self, content: str) -> bool:
        """Return True when no checksum is pinned or it matches content."""
        if self.original_checksum is None:
            return True
        return self.original_checksum == content_checksum(content)


class VerificationResult(BaseModel):
    """Advisory verdict on whether a patch fits the current content."""

    model_config = ConfigDict(frozen=False)

    valid: bool
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)


class ApplyResult(BaseModel):
    """Outcome of applying a patch; hunks_applied + hunks_failed == len(hunks)."""

    model_config = ConfigDict(frozen=False)

    success: bool
    file_path: str = ""
    new_content: str
    hunks_applied: int = 0
    hunks_failed: int = 0
    errors: list[str] = Field(default_factory=list)
