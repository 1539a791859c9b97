"""Pure helper functions for orchestrator step selection and recovery.

All functions are stateless and have no external dependencies.
"""

from patchloop.models import Step, StepStatus
from patchloop.orchestrator.state import OrchestrationState

# Dependency states that can never turn into COMPLETED
DEAD_STATUSES = frozenset({StepStatus.FAILED, StepStatus.SKIPPED})


def find_step_index(steps: list[Step], step_id: str | None) -> int:
    """Find the index of a step by its id.

    Returns:
        Index of the step, or -1 if not found.
    """
    for idx, step in enumerate(steps):
        if step.id == step_id:
            return idx
    return -1


def unmet_dependencies(step: Step, steps: list[Step]) -> list[str]:
    """Return dependency ids of step that are not COMPLETED (or unknown)."""
    status_by_id = {s.id: s.status for s in steps}
    return [
        dep_id
        for dep_id in step.dependencies
        if status_by_id.get(dep_id) != StepStatus.COMPLETED
    ]


def blocked_dependencies(step: Step, steps: list[Step]) -> list[str]:
    """Return dependency ids of step that failed, were skipped or do not exist."""
    status_by_id = {s.id: s.status for s in steps}
    return [
        dep_id
        for dep_id in step.dependencies
        if dep_id not in status_by_id or status_by_id[dep_id] in DEAD_STATUSES
    ]


def get_next_pending_step(steps: list[Step]) -> Step | None:
    """Return the first PENDING step, in plan order, whose dependencies are COMPLETED."""
    for step in steps:
        if step.status == StepStatus.PENDING and not unmet_dependencies(step, steps):
            return step
    return None


def collect_skips(steps: list[Step]) -> dict[str, str]:
    """Decide which PENDING steps can never run, with a reason for each.

    Skips cascade: a step depending on a skipped step is skipped too. When
    no pending step is eligible (a dependency cycle or self-dependency),
    every remaining pending step is skipped.

    Returns:
        Mapping of step id -> reason string, in plan order.
    """
    working = [step.model_copy() for step in steps]
    reasons: dict[str, str] = {}

    changed = True
    while changed:
        changed = False
        for step in working:
            if step.status != StepStatus.PENDING:
                continue
            blocked = blocked_dependencies(step, working)
            if blocked:
                reasons[step.id] = f"Dependencies not met: {', '.join(blocked)}"
                step.status = StepStatus.SKIPPED
                changed = True

    pending = [step for step in working if step.status == StepStatus.PENDING]
    if pending and get_next_pending_step(working) is None:
        for step in pending:
            reasons[step.id] = (
                "Dependencies not met: " + ", ".join(unmet_dependencies(step, working))
            )
    return reasons


def backoff_delay(attempt: int, base: float = 1.0) -> float:
    """Exponential backoff: base * 2**attempt seconds."""
    return base * (2 ** attempt)


def route_after_select(state: OrchestrationState) -> str:
    """Router for the post-select conditional edge.

    Returns:
        "execute" when a step was selected, "done" otherwise.
    """
    if state["current_step_id"] is not None:
        return "execute"
    return "done"


def route_after_execute(state: OrchestrationState) -> str:
    """Router for the post-execute conditional edge.

    Returns:
        "next" on success, "retry" while attempts remain, "fail" otherwise.
    """
    if state["last_error"] is None:
        return "next"
    if state["attempt"] < state["max_retries"]:
        return "retry"
    return "fail"
