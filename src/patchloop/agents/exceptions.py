"""Exceptions for agent operations."""


class AgentError(Exception):
    """Base exception for all agent operations."""


class PatchError(AgentError):
    """Base exception for patch handling."""


class PatchParseError(PatchError):
    """Raised when unified-diff text cannot be turned into a Patch."""


class PatchApplicationError(PatchError):
    """Raised when a patch could only be applied partially or not at all."""


class GenerationError(AgentError):
    """Raised when the generation collaborator fails or returns a malformed payload."""


class ReflectionError(AgentError):
    """Raised when a patched file still fails reflection after all fix attempts."""


class ConsistencyError(AgentError):
    """Raised when a batch of patches would break cross-file references."""

    def __init__(self, message: str, report=None) -> None:  # type: ignore[no-untyped-def]
        super().__init__(message)
        self.report = report
