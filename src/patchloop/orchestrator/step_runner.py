"""Executes a single plan step: generate -> verify -> apply -> reflect."""

import logging
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field

from patchloop.agents.exceptions import PatchApplicationError, ReflectionError
from patchloop.agents.patch_applier import PatchApplier
from patchloop.agents.patch_generator import PatchGenerator
from patchloop.agents.reflection_engine import ReflectionEngine
from patchloop.models import (
    ActionType,
    FileOperation,
    OperationType,
    Patch,
    ReflectionContext,
    ReflectionResult,
    Step,
    VerificationResult,
)
from patchloop.orchestrator.exceptions import StepExecutionError
from patchloop.utils.diff_generator import generate_unified_diff

logger = logging.getLogger(__name__)

# (phase, step, message)
EventSink = Callable[[str, Step, str], None]


class StepOutcome(BaseModel):
    """What one successful step attempt produced."""

    model_config = ConfigDict(frozen=False)

    operations: list[FileOperation] = Field(default_factory=list)
    files: dict[str, str]  # File set after the step
    verification: VerificationResult | None = None
    reflection: ReflectionResult | None = None
    patch: Patch | None = None  # The patch that produced the content, marked applied


class StepRunner:
    """Runs one attempt of a step against the latest file contents."""

    def __init__(
        self,
        generator: PatchGenerator,
        applier: PatchApplier | None = None,
        reflection: ReflectionEngine | None = None,
        enable_reflection: bool = True,
        max_reflection_iterations: int = 5,
    ) -> None:
        self._generator = generator
        self._applier = applier or PatchApplier()
        self._reflection = reflection or ReflectionEngine(generator=generator, applier=self._applier)
        self.enable_reflection = enable_reflection
        self.max_reflection_iterations = max_reflection_iterations
        self.generation_calls = 0

    def run(
        self,
        step: Step,
        files: dict[str, str],
        goal: str = "",
        emit: EventSink | None = None,
    ) -> StepOutcome:
        """Carry out step and return the resulting operations and file set.

        Raises:
            StepExecutionError: If the step targets a missing file.
            PatchApplicationError: If any hunk of the generated patch fails.
            ReflectionError: If reflection still demands revision after fixing.
            GenerationError: Propagated from the generator.
        """
        def _emit(phase: str, message: str) -> None:
            if emit is not None:
                emit(phase, step, message)

        path = step.file_path

        if step.action_type == ActionType.INSPECT:
            _emit("step_reading", f"Inspecting {path}")
            return StepOutcome(files=files)

        if step.action_type == ActionType.DELETE:
            if path not in files:
                raise StepExecutionError(f"Cannot delete {path}: file not found")
            remaining = {p: c for p, c in files.items() if p != path}
            operation = FileOperation(
                type=OperationType.DELETE,
                file_path=path,
                explanation=step.description,
            )
            return StepOutcome(operations=[operation], files=remaining)

        if step.action_type == ActionType.MODIFY and path not in files:
            raise StepExecutionError(f"Cannot modify {path}: file not found")

        _emit("step_reading", f"Reading {path}")
        original = files.get(path, "")

        _emit("step_generating", f"Generating patch for {path}")
        self.generation_calls += 1
        patch = self._generator.generate_patch(
            path,
            original,
            step.description,
            line_hints=step.line_hints or None,
            symbol_hints=step.symbol_hints or None,
        )

        _emit("step_verifying", f"Verifying patch for {path}")
        verification = self._applier.verify(patch, original)
        if not verification.valid:
            # Advisory: apply() may still place hunks by context
            logger.warning("Patch for %s failed verification: %s", path, "; ".join(verification.issues))
        else:
            patch = patch.mark_verified()

        applied = self._applier.apply(patch, original)
        if not applied.success:
            raise PatchApplicationError(
                f"Patch for {path} applied {applied.hunks_applied}/{len(patch.hunks)} hunks: "
                + "; ".join(applied.errors)
            )
        patch = patch.mark_applied()
        new_content = applied.new_content

        reflection_result = None
        if self.enable_reflection:
            _emit("reflection", f"Reflecting on {path}")
            context = ReflectionContext(
                goal=goal,
                file_path=path,
                original_content=original,
                patched_content=new_content,
                patch=patch,
                all_files={p: c for p, c in files.items() if p != path},
            )
            reflection_result = self._reflection.reflect_and_fix(
                context, self.max_reflection_iterations
            )
            if not reflection_result.passed and reflection_result.requires_revision:
                raise ReflectionError(
                    f"Reflection failed for {path} with score {reflection_result.score} "
                    f"({reflection_result.error_count} error(s)): "
                    + "; ".join(i.message for i in reflection_result.issues[:5])
                )
            new_content = reflection_result.patched_content
            if reflection_result.revised_patch is not None:
                patch = reflection_result.revised_patch.mark_applied()

        is_new = path not in files
        operation = FileOperation(
            type=OperationType.CREATE if is_new else OperationType.MODIFY,
            file_path=path,
            content=new_content,
            diff=generate_unified_diff(path, original, new_content) or None,
            explanation=patch.description or step.description,
        )
        updated = dict(files)
        updated[path] = new_content
        return StepOutcome(
            operations=[operation],
            files=updated,
            verification=verification,
            reflection=reflection_result,
            patch=patch,
        )
