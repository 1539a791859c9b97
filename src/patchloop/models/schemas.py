"""Pydantic data models for file sets and extracted module symbols."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class FileEntry(BaseModel):
    """A single file in an input file set."""

    model_config = ConfigDict(frozen=False)

    file_path: str  # POSIX-style relative path
    content: str

    @field_validator("file_path")
    @classmethod
    def _posix_path(cls, value: str) -> str:
        return value.replace("\\", "/")

    @property
    def line_count(self) -> int:
        return len(self.content.split("\n"))


class ImportBinding(BaseModel):
    """One name bound by an import statement."""

    model_config = ConfigDict(frozen=True)

    source: str  # raw module specifier, e.g. "./a"
    imported: str  # name in the exporting module; "default" or "*" for those forms
    local: str  # name bound in the importing module
    kind: str  # one of "named", "default", "namespace"
    line: Optional[int] = None


class ModuleSymbols(BaseModel):
    """Imports and exports extracted from one module."""

    model_config = ConfigDict(frozen=False)

    file_path: str
    imports: list[ImportBinding] = Field(default_factory=list)
    import_sources: list[str] = Field(default_factory=list)  # includes re-export sources
    exports: list[str] = Field(default_factory=list)
    parse_error: Optional[str] = None
