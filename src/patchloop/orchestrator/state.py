"""State definition for the LangGraph orchestration run."""

import operator
from typing import Annotated, TypedDict

from patchloop.config import MAX_RETRIES_LIMIT
from patchloop.models import ConsistencyReport, FileOperation, Step, StepResult


class OrchestrationState(TypedDict):
    """State for one orchestration run.

    Fields with Annotated[list, operator.add] reducers accumulate across nodes.
    All other fields use default overwrite semantics.
    """

    # Input
    goal: str
    max_retries: int

    # Plan and working copy of the file set (latest applied content)
    steps: list[Step]
    files: dict[str, str]
    touched_files: list[str]

    # Current step
    current_step_id: str | None
    attempt: int
    last_error: str | None

    # Outputs (accumulating reducers)
    results: Annotated[list[StepResult], operator.add]
    operations: Annotated[list[FileOperation], operator.add]

    # Final cross-file audit
    consistency_report: ConsistencyReport | None
    cancelled: bool

    # Error accumulation
    errors: Annotated[list[str], operator.add]


def make_initial_state(
    steps: list[Step],
    files: dict[str, str],
    goal: str = "",
    max_retries: int = 3,
) -> OrchestrationState:
    """Create the initial state for an orchestration run.

    Args:
        steps: Plan steps in execution order.
        files: Mapping of POSIX relative path -> current content.
        goal: The overall objective, passed to reflection.
        max_retries: Retries per step after the first attempt.

    Returns:
        OrchestrationState dict with all fields initialised to defaults.
    """
    clamped_retries = max(0, min(max_retries, MAX_RETRIES_LIMIT))
    return {
        "goal": goal,
        "max_retries": clamped_retries,
        "steps": [step.model_copy() for step in steps],
        "files": {path.replace("\\", "/"): content for path, content in files.items()},
        "touched_files": [],
        "current_step_id": None,
        "attempt": 0,
        "last_error": None,
        "results": [],
        "operations": [],
        "consistency_report": None,
        "cancelled": False,
        "errors": [],
    }
