"""Agent components for the patch lifecycle."""

from patchloop.agents.exceptions import (
    AgentError,
    ConsistencyError,
    GenerationError,
    PatchApplicationError,
    PatchError,
    PatchParseError,
    ReflectionError,
)
from patchloop.agents.consistency_auditor import ConsistencyAuditor
from patchloop.agents.dependency_graph import DependencyGraph, analyze_project_structure
from patchloop.agents.patch_applier import PatchApplier, parse_patches
from patchloop.agents.patch_generator import LLMPatchGenerator, PatchGenerator
from patchloop.agents.reflection_engine import ReflectionEngine

__all__ = [
    "AgentError",
    "ConsistencyAuditor",
    "ConsistencyError",
    "DependencyGraph",
    "GenerationError",
    "LLMPatchGenerator",
    "PatchApplicationError",
    "PatchApplier",
    "PatchError",
    "PatchGenerator",
    "PatchParseError",
    "ReflectionEngine",
    "ReflectionError",
    "analyze_project_structure",
    "parse_patches",
]
