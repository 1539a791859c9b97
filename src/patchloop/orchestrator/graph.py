"""LangGraph orchestrator graph for patch-plan execution.

Wires step selection, StepRunner attempts, backoff retries and the final
ConsistencyAuditor pass into a StateGraph, and exposes the Orchestrator
facade used by the CLI and the job queue.
"""

import logging
import time
from typing import Any, Callable

from langgraph.graph import END, START, StateGraph

from patchloop.agents.consistency_auditor import ConsistencyAuditor
from patchloop.agents.patch_applier import PatchApplier
from patchloop.agents.patch_generator import PatchGenerator
from patchloop.agents.reflection_engine import ReflectionEngine
from patchloop.config import PatchLoopSettings
from patchloop.models import (
    ActionType,
    ConsistencyReport,
    Job,
    ProgressEvent,
    Step,
    StepResult,
    StepStatus,
)
from patchloop.orchestrator.exceptions import GraphBuildError
from patchloop.orchestrator.recovery import (
    backoff_delay,
    collect_skips,
    find_step_index,
    get_next_pending_step,
    route_after_execute,
    route_after_select,
)
from patchloop.orchestrator.state import OrchestrationState, make_initial_state
from patchloop.orchestrator.step_runner import EventSink, StepRunner

logger = logging.getLogger(__name__)

# Nodes visited per step attempt (execute + retry) plus select/fail slack
NODES_PER_ATTEMPT = 2
RECURSION_SLACK = 10
CANCELLED_REASON = "Run cancelled"


def _noop_emit(phase: str, step: Step | None, message: str) -> None:
    return None


def _set_status(steps: list[Step], step_id: str, status: StepStatus) -> list[Step]:
    updated = list(steps)
    idx = find_step_index(updated, step_id)
    if idx >= 0:
        updated[idx] = updated[idx].model_copy(update={"status": status})
    return updated


def make_select_node(
    should_cancel: Callable[[], bool] | None = None,
    emit: EventSink | Callable = _noop_emit,
) -> Callable[[OrchestrationState], dict]:
    """Factory: returns a node closure that picks the next eligible step.

    The closure:
    1. Skips every pending step when should_cancel() reports cancellation
    2. Marks steps whose dependencies can never complete as SKIPPED
    3. Marks the next eligible step IN_PROGRESS and resets the attempt counter

    Returns {"current_step_id": None} when nothing is left to run.
    """

    def select_node(state: OrchestrationState) -> dict:
        steps = list(state["steps"])
        skip_results: list[StepResult] = []

        if should_cancel is not None and should_cancel():
            for step in steps:
                if step.status == StepStatus.PENDING:
                    steps = _set_status(steps, step.id, StepStatus.SKIPPED)
                    skip_results.append(StepResult(
                        step_id=step.id, status=StepStatus.SKIPPED, error=CANCELLED_REASON,
                    ))
            return {
                "steps": steps,
                "results": skip_results,
                "current_step_id": None,
                "cancelled": True,
                "errors": [CANCELLED_REASON] if skip_results else [],
            }

        for step_id, reason in collect_skips(steps).items():
            steps = _set_status(steps, step_id, StepStatus.SKIPPED)
            skip_results.append(StepResult(step_id=step_id, status=StepStatus.SKIPPED, error=reason))
            emit("step_skipped", steps[find_step_index(steps, step_id)], reason)

        step = get_next_pending_step(steps)
        if step is None:
            return {"steps": steps, "results": skip_results, "current_step_id": None}

        steps = _set_status(steps, step.id, StepStatus.IN_PROGRESS)
        emit("step_start", step, f"Starting step {step.id}: {step.description}")
        return {
            "steps": steps,
            "results": skip_results,
            "current_step_id": step.id,
            "attempt": 0,
            "last_error": None,
        }

    return select_node


def make_execute_node(
    runner: StepRunner,
    emit: EventSink | Callable = _noop_emit,
) -> Callable[[OrchestrationState], dict]:
    """Factory: returns a node closure that runs one attempt of the current step.

    On success the step is COMPLETED, its operations are appended and the
    file set is replaced by the step's output. On failure only last_error is
    set, so the router can decide between retry and fail.

    IMPORTANT: always returns operations/results as lists for the reducers.
    """

    def execute_node(state: OrchestrationState) -> dict:
        steps = state["steps"]
        idx = find_step_index(steps, state["current_step_id"])
        if idx < 0:
            return {
                "last_error": f"execute_node: unknown step {state['current_step_id']}",
                "errors": [f"execute_node: unknown step {state['current_step_id']}"],
            }
        step = steps[idx]
        started = time.monotonic()

        try:
            outcome = runner.run(step, state["files"], state["goal"], emit)
        except Exception as exc:
            message = f"{type(exc).__name__}: {exc}"
            logger.warning("Step %s attempt %d failed: %s", step.id, state["attempt"] + 1, message)
            return {
                "last_error": message,
                "errors": [f"step {step.id} attempt {state['attempt'] + 1}: {message}"],
            }

        touched = list(state["touched_files"])
        for op in outcome.operations:
            if op.file_path not in touched:
                touched.append(op.file_path)

        emit("step_complete", step, f"Completed step {step.id}")
        return {
            "steps": _set_status(steps, step.id, StepStatus.COMPLETED),
            "files": outcome.files,
            "touched_files": touched,
            "last_error": None,
            "operations": outcome.operations,
            "results": [StepResult(
                step_id=step.id,
                status=StepStatus.COMPLETED,
                operations=outcome.operations,
                retry_count=state["attempt"],
                execution_time_ms=int((time.monotonic() - started) * 1000),
                verification=outcome.verification,
                reflection=outcome.reflection,
            )],
        }

    return execute_node


def make_retry_node(
    sleep: Callable[[float], None] = time.sleep,
    backoff_base: float = 1.0,
    emit: EventSink | Callable = _noop_emit,
) -> Callable[[OrchestrationState], dict]:
    """Factory: returns a node closure that waits base * 2**attempt, then bumps attempt."""

    def retry_node(state: OrchestrationState) -> dict:
        attempt = state["attempt"]
        delay = backoff_delay(attempt, backoff_base)
        steps = state["steps"]
        step = steps[find_step_index(steps, state["current_step_id"])]
        emit(
            "retry",
            step,
            f"Retrying step {step.id} in {delay:g}s "
            f"(attempt {attempt + 2}/{state['max_retries'] + 1})",
        )
        if delay > 0:
            sleep(delay)
        return {"attempt": attempt + 1}

    return retry_node


def make_fail_node(
    emit: EventSink | Callable = _noop_emit,
) -> Callable[[OrchestrationState], dict]:
    """Factory: returns a node closure that records the exhausted step.

    Inspect steps are non-fatal: they are recorded COMPLETED with the error
    attached so their dependents still run. Every other step is FAILED.
    """

    def fail_node(state: OrchestrationState) -> dict:
        steps = state["steps"]
        step = steps[find_step_index(steps, state["current_step_id"])]
        status = StepStatus.COMPLETED if step.action_type == ActionType.INSPECT else StepStatus.FAILED
        emit("error", step, f"Step {step.id} failed: {state['last_error']}")
        return {
            "steps": _set_status(steps, step.id, status),
            "results": [StepResult(
                step_id=step.id,
                status=status,
                error=state["last_error"],
                retry_count=state["attempt"],
            )],
        }

    return fail_node


def make_audit_node(
    auditor: ConsistencyAuditor,
    emit: EventSink | Callable = _noop_emit,
) -> Callable[[OrchestrationState], dict]:
    """Factory: returns a node closure that audits every file touched by the run.

    On error: returns a synthetic inconsistent report plus the error message.
    """

    def audit_node(state: OrchestrationState) -> dict:
        try:
            report = auditor.audit_contents(state["files"], set(state["touched_files"]))
        except Exception as exc:
            return {
                "consistency_report": ConsistencyReport(consistent=False, files_checked=0),
                "errors": [f"audit_node error: {exc}"],
            }
        errors = [issue.description for issue in report.issues]
        emit("complete", None, f"Run complete, {len(report.issues)} consistency issue(s)")
        return {"consistency_report": report, "errors": errors}

    return audit_node


def build_graph(
    runner: StepRunner,
    auditor: ConsistencyAuditor,
    sleep: Callable[[float], None] = time.sleep,
    backoff_base: float = 1.0,
    should_cancel: Callable[[], bool] | None = None,
    emit: EventSink | Callable = _noop_emit,
):
    """Build and compile the orchestrator StateGraph.

    Edge topology:
      START -> select_node
      select_node -> conditional(route_after_select) -> {execute_node, audit_node}
      execute_node -> conditional(route_after_execute) -> {select_node, retry_node, fail_node}
      retry_node -> execute_node
      fail_node -> select_node
      audit_node -> END

    Returns:
        CompiledStateGraph ready to invoke.

    Raises:
        GraphBuildError: If graph construction fails.
    """
    try:
        graph = StateGraph(OrchestrationState)

        graph.add_node("select_node", make_select_node(should_cancel, emit))
        graph.add_node("execute_node", make_execute_node(runner, emit))
        graph.add_node("retry_node", make_retry_node(sleep, backoff_base, emit))
        graph.add_node("fail_node", make_fail_node(emit))
        graph.add_node("audit_node", make_audit_node(auditor, emit))

        graph.add_edge(START, "select_node")
        graph.add_conditional_edges(
            "select_node",
            route_after_select,
            {"execute": "execute_node", "done": "audit_node"},
        )
        graph.add_conditional_edges(
            "execute_node",
            route_after_execute,
            {"next": "select_node", "retry": "retry_node", "fail": "fail_node"},
        )
        graph.add_edge("retry_node", "execute_node")
        graph.add_edge("fail_node", "select_node")
        graph.add_edge("audit_node", END)

        return graph.compile()

    except Exception as exc:
        raise GraphBuildError(f"Failed to build orchestrator graph: {exc}") from exc


def recursion_limit_for(step_count: int, max_retries: int) -> int:
    """Upper bound on graph super-steps for a run of step_count steps."""
    per_step = 2 + NODES_PER_ATTEMPT * (max_retries + 1)
    return step_count * per_step + RECURSION_SLACK


class Orchestrator:
    """Runs step plans through the graph and keeps telemetry across runs."""

    def __init__(
        self,
        generator: PatchGenerator,
        settings: PatchLoopSettings | None = None,
        applier: PatchApplier | None = None,
        reflection: ReflectionEngine | None = None,
        auditor: ConsistencyAuditor | None = None,
        sleep: Callable[[float], None] = time.sleep,
        on_progress: Callable[[ProgressEvent], None] | None = None,
    ) -> None:
        self.settings = settings or PatchLoopSettings()
        self._applier = applier or PatchApplier()
        self._auditor = auditor or ConsistencyAuditor(self._applier)
        self._reflection = reflection or ReflectionEngine(
            generator=generator,
            applier=self._applier,
            auditor=self._auditor,
            max_iterations=self.settings.max_reflection_iterations,
        )
        self._runner = StepRunner(
            generator,
            applier=self._applier,
            reflection=self._reflection,
            enable_reflection=self.settings.enable_reflection,
            max_reflection_iterations=self.settings.max_reflection_iterations,
        )
        self._sleep = sleep
        self._on_progress = on_progress
        self.telemetry: dict[str, int] = {
            "runs": 0,
            "steps_completed": 0,
            "steps_failed": 0,
            "steps_skipped": 0,
            "attempts": 0,
            "retries": 0,
            "generation_calls": 0,
            "reflection_iterations": 0,
        }

    def _make_emitter(self, total_steps: int) -> Callable[[str, Step | None, str], None]:
        started = time.monotonic()
        finished = {"count": 0}

        def emit(phase: str, step: Step | None, message: str) -> None:
            if phase in ("step_complete", "error", "step_skipped"):
                finished["count"] += 1
            logger.info("[%s] %s", phase, message)
            if self._on_progress is None:
                return
            self._on_progress(ProgressEvent(
                phase=phase,
                step_id=step.id if step is not None else None,
                message=message,
                current_step=min(finished["count"] + 1, total_steps),
                total_steps=total_steps,
                elapsed_ms=int((time.monotonic() - started) * 1000),
            ))

        return emit

    def run_plan(
        self,
        steps: list[Step],
        files: dict[str, str],
        goal: str = "",
        should_cancel: Callable[[], bool] | None = None,
    ) -> dict[str, Any]:
        """Execute steps in dependency order against files.

        Args:
            steps: Plan steps; order is the tie-breaker among eligible steps.
            files: Mapping of path -> content; never mutated.
            goal: Overall objective, used by goal-alignment reflection.
            should_cancel: Polled at the top of every step.

        Returns:
            The final OrchestrationState dict.
        """
        state = make_initial_state(
            steps, files, goal=goal, max_retries=self.settings.max_retries_per_step,
        )
        calls_before = self._runner.generation_calls
        graph = build_graph(
            self._runner,
            self._auditor,
            sleep=self._sleep,
            backoff_base=self.settings.backoff_base_seconds,
            should_cancel=should_cancel,
            emit=self._make_emitter(len(steps)),
        )
        result = graph.invoke(
            state,
            config={"recursion_limit": recursion_limit_for(len(steps), state["max_retries"])},
        )
        self._record(result, self._runner.generation_calls - calls_before)
        return result

    def _record(self, result: dict[str, Any], generation_calls: int) -> None:
        self.telemetry["runs"] += 1
        self.telemetry["generation_calls"] += generation_calls
        for step_result in result["results"]:
            if step_result.status == StepStatus.SKIPPED:
                self.telemetry["steps_skipped"] += 1
                continue
            if step_result.status == StepStatus.COMPLETED and step_result.error is None:
                self.telemetry["steps_completed"] += 1
            else:
                self.telemetry["steps_failed"] += 1
            self.telemetry["attempts"] += step_result.retry_count + 1
            self.telemetry["retries"] += step_result.retry_count
            if step_result.reflection is not None:
                self.telemetry["reflection_iterations"] += step_result.reflection.iterations

    def as_job_handler(self) -> Callable[[Job], dict[str, Any]]:
        """Adapt run_plan into a JobQueue handler.

        The job payload carries "steps" (Step dicts or models), "files"
        (path -> content) and an optional "goal". The run observes the job's
        cancellation flag between steps.
        """

        def handler(job: Job) -> dict[str, Any]:
            payload = job.payload
            steps = [
                s if isinstance(s, Step) else Step.model_validate(s)
                for s in payload.get("steps", [])
            ]
            result = self.run_plan(
                steps,
                dict(payload.get("files", {})),
                goal=payload.get("goal", ""),
                should_cancel=lambda: job.is_cancelled,
            )
            failed = [r.step_id for r in result["results"] if r.status == StepStatus.FAILED]
            if failed and not result["cancelled"]:
                logger.info("Job %s finished with failed steps: %s", job.id, ", ".join(failed))
            return {
                "operations": [op.model_dump() for op in result["operations"]],
                "results": [r.model_dump() for r in result["results"]],
                "consistent": (
                    result["consistency_report"].consistent
                    if result["consistency_report"] is not None
                    else True
                ),
                "cancelled": result["cancelled"],
            }

        return handler
