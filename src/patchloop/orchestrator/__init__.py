"""LangGraph orchestrator package for patch-plan execution."""

from patchloop.orchestrator.exceptions import (
    GraphBuildError,
    OrchestratorError,
    StepExecutionError,
)
from patchloop.orchestrator.graph import Orchestrator, build_graph
from patchloop.orchestrator.state import OrchestrationState, make_initial_state
from patchloop.orchestrator.step_runner import StepOutcome, StepRunner

__all__ = [
    "GraphBuildError",
    "OrchestrationState",
    "Orchestrator",
    "OrchestratorError",
    "StepExecutionError",
    "StepOutcome",
    "StepRunner",
    "build_graph",
    "make_initial_state",
]
