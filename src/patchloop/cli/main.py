"""CLI entry point for patchloop."""
import argparse
import json
import logging
import sys
import traceback
from pathlib import Path

from pydantic import ValidationError

from patchloop.agents.exceptions import AgentError
from patchloop.models import FileEntry, FileOperation, OperationType, Patch, Step, StepStatus
from patchloop.orchestrator.exceptions import OrchestratorError

logger = logging.getLogger(__name__)

# Exit codes
EXIT_SUCCESS = 0
EXIT_INVALID_INPUT = 1
EXIT_AGENT_ERROR = 2
EXIT_ORCHESTRATOR_ERROR = 3
EXIT_REJECTED = 4
EXIT_UNEXPECTED = 5
EXIT_KEYBOARD_INTERRUPT = 130

DEFAULT_EXCLUDES = ("node_modules", "dist", ".git", "__pycache__")


class InvalidInputError(Exception):
    """Raised for unreadable or malformed command-line inputs."""


def build_parser() -> argparse.ArgumentParser:
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="patchloop",
        description="Verify, apply and orchestrate hunk-based patches for JS/TS codebases",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable verbose output")
    parser.add_argument(
        "--output-json", action="store_true", help="Output results as JSON"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    verify = subparsers.add_parser("verify", help="Verify unified-diff patches against a repository")
    verify.add_argument("diff", type=str, help="Unified diff file ('-' for stdin)")
    verify.add_argument("repo_path", type=str, help="Path to the repository root")

    apply = subparsers.add_parser(
        "apply", help="Apply unified-diff patches after a batch consistency check"
    )
    apply.add_argument("diff", type=str, help="Unified diff file ('-' for stdin)")
    apply.add_argument("repo_path", type=str, help="Path to the repository root")
    apply.add_argument(
        "--write", action="store_true", help="Write patched files to disk (default: report only)"
    )

    analyze = subparsers.add_parser(
        "analyze", help="Report circular dependencies and long files"
    )
    analyze.add_argument("repo_path", type=str, help="Path to the repository root")
    analyze.add_argument(
        "--max-lines",
        type=int,
        default=None,
        help="Long-file threshold (default: PATCHLOOP_MAX_FILE_LINES or 700)",
    )

    run = subparsers.add_parser("run", help="Execute a step plan with the LLM patch generator")
    run.add_argument("plan", type=str, help="Plan JSON: a list of steps or {goal, steps}")
    run.add_argument("repo_path", type=str, help="Path to the repository root")
    run.add_argument("--goal", type=str, default=None, help="Overrides the plan's goal")
    run.add_argument("--max-retries", type=int, default=None, help="Retries per step")
    run.add_argument("--model", type=str, default=None, help="Model ID to use")
    run.add_argument(
        "--llm-provider",
        type=str,
        default=None,
        choices=("auto", "anthropic", "openai"),
        help="LLM provider: auto (default), anthropic, or openai",
    )
    run.add_argument(
        "--llm-fallback-provider",
        type=str,
        default=None,
        choices=("anthropic", "openai"),
        help="Fallback provider when the primary provider fails",
    )
    run.add_argument(
        "--allow-llm-fallback",
        action="store_true",
        default=None,
        help="Allow fallback to the alternate provider",
    )
    run.add_argument(
        "--no-reflection", action="store_true", help="Skip the reflection loop"
    )
    run.add_argument(
        "--write", action="store_true", help="Write resulting operations to disk"
    )
    return parser


def validate_repo_path(raw_path: str) -> Path:
    """Resolve the repository path.

    Raises:
        InvalidInputError: If path is not a directory.
    """
    resolved = Path(raw_path).resolve()
    if not resolved.is_dir():
        raise InvalidInputError(f"'{raw_path}' is not a valid directory.")
    return resolved


def load_repo_files(
    repo_path: Path,
    exclude_patterns: tuple[str, ...] = DEFAULT_EXCLUDES,
) -> list[FileEntry]:
    """Read every supported JS/TS file under repo_path, sorted by path.

    Paths are POSIX and relative to repo_path.
    """
    from patchloop.utils.ast_parser import is_supported_file

    entries: list[FileEntry] = []
    for path in sorted(repo_path.rglob("*")):
        if not path.is_file() or not is_supported_file(str(path)):
            continue
        relative = path.relative_to(repo_path)
        if any(part in exclude_patterns for part in relative.parts):
            continue
        entries.append(FileEntry(
            file_path=relative.as_posix(),
            content=path.read_text(encoding="utf-8", errors="replace"),
        ))
    return entries


def read_text_input(raw_path: str) -> str:
    """Read a file argument, or stdin for '-'.

    Raises:
        InvalidInputError: If the file cannot be read.
    """
    if raw_path == "-":
        return sys.stdin.read()
    try:
        return Path(raw_path).read_text(encoding="utf-8")
    except OSError as exc:
        raise InvalidInputError(f"Cannot read '{raw_path}': {exc}") from exc


def load_plan(raw_path: str) -> tuple[list[Step], str]:
    """Parse a plan file into steps and a goal.

    Accepts either a JSON list of steps or an object {"goal": ..., "steps": [...]}.

    Raises:
        InvalidInputError: If the JSON or any step is malformed.
    """
    text = read_text_input(raw_path)
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise InvalidInputError(f"Plan is not valid JSON: {exc}") from exc

    goal = ""
    if isinstance(data, dict):
        goal = str(data.get("goal", ""))
        data = data.get("steps", [])
    if not isinstance(data, list):
        raise InvalidInputError("Plan must be a list of steps or an object with 'steps'")

    try:
        steps = [Step.model_validate(item) for item in data]
    except ValidationError as exc:
        raise InvalidInputError(f"Invalid step in plan: {exc}") from exc

    ids = [step.id for step in steps]
    if len(ids) != len(set(ids)):
        raise InvalidInputError("Plan contains duplicate step ids")
    return steps, goal


def _safe_target(repo_path: Path, file_path: str) -> Path:
    target = (repo_path / file_path).resolve()
    if not target.is_relative_to(repo_path):
        raise InvalidInputError(f"Refusing to write outside the repository: {file_path}")
    return target


def read_patch_targets(repo_path: Path, patches: list[Patch]) -> dict[str, str]:
    """Read every existing file the patches name, whatever its extension.

    Files that do not exist yet are left out, so their patches are
    treated as creations.

    Raises:
        InvalidInputError: If a patch targets a path outside repo_path.
    """
    contents: dict[str, str] = {}
    for patch in patches:
        target = _safe_target(repo_path, patch.file_path)
        if target.is_file():
            contents[patch.file_path] = target.read_text(encoding="utf-8", errors="replace")
    return contents


def write_operations(repo_path: Path, operations: list[FileOperation]) -> list[str]:
    """Materialize operations under repo_path in order.

    Returns:
        The POSIX paths written or removed.
    """
    # Resolve every target first so a bad path rejects the whole batch
    targets = [_safe_target(repo_path, op.file_path) for op in operations]
    written: list[str] = []
    for op, target in zip(operations, targets):
        if op.type == OperationType.DELETE:
            target.unlink(missing_ok=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(op.content or "", encoding="utf-8")
        logger.info("%s %s", op.type.value, op.file_path)
        written.append(op.file_path)
    return written


def format_result_json(result: dict) -> str:
    """Serialize result dict to JSON string.

    Calls .model_dump() on Pydantic model values, including inside lists.
    Falls back to str() for non-serializable types (datetime, Path, etc.)
    via default=str.
    """

    def _serialize(obj):
        if obj is None:
            return None
        if hasattr(obj, "model_dump"):
            return obj.model_dump(mode="json")
        if isinstance(obj, list):
            return [_serialize(item) for item in obj]
        if isinstance(obj, dict):
            return {k: _serialize(v) for k, v in obj.items()}
        return obj

    prepared = {k: _serialize(v) for k, v in result.items()}
    return json.dumps(prepared, indent=2, default=str)


# ----------------------------------------------------------------------
# Subcommands
# ----------------------------------------------------------------------


def cmd_verify(args: argparse.Namespace) -> tuple[dict, int]:
    from patchloop.agents.patch_applier import PatchApplier, parse_patches

    repo_path = validate_repo_path(args.repo_path)
    patches = parse_patches(read_text_input(args.diff))
    files = {entry.file_path: entry.content for entry in load_repo_files(repo_path)}
    files.update(read_patch_targets(repo_path, patches))

    applier = PatchApplier()
    verifications = [applier.verify(patch, files.get(patch.file_path, "")) for patch in patches]
    all_valid = all(v.valid for v in verifications)
    result = {
        "valid": all_valid,
        "patches": [
            {"file_path": patch.file_path, "hunks": len(patch.hunks), "verification": verification}
            for patch, verification in zip(patches, verifications)
        ],
    }
    return result, EXIT_SUCCESS if all_valid else EXIT_REJECTED


def cmd_apply(args: argparse.Namespace) -> tuple[dict, int]:
    from patchloop.agents.consistency_auditor import ConsistencyAuditor
    from patchloop.agents.patch_applier import PatchApplier, parse_patches

    repo_path = validate_repo_path(args.repo_path)
    patches = parse_patches(read_text_input(args.diff))
    files = {entry.file_path: entry.content for entry in load_repo_files(repo_path)}
    files.update(read_patch_targets(repo_path, patches))

    applier = PatchApplier()
    report = ConsistencyAuditor(applier).check(patches, files)
    result: dict = {"consistency_report": report, "applied": [], "written": []}
    if not report.consistent:
        return result, EXIT_REJECTED

    operations: list[FileOperation] = []
    for patch in patches:
        original = files.get(patch.file_path)
        applied = applier.apply(patch, original or "")
        result["applied"].append(applied)
        files[patch.file_path] = applied.new_content
        operations.append(FileOperation(
            type=OperationType.CREATE if original is None else OperationType.MODIFY,
            file_path=patch.file_path,
            content=applied.new_content,
            explanation=patch.description,
        ))

    if args.write:
        result["written"] = write_operations(repo_path, operations)
    return result, EXIT_SUCCESS


def cmd_analyze(args: argparse.Namespace) -> tuple[dict, int]:
    from patchloop.agents.dependency_graph import analyze_project_structure
    from patchloop.config import PatchLoopSettings

    repo_path = validate_repo_path(args.repo_path)
    settings = PatchLoopSettings.from_env(max_file_lines=args.max_lines)
    files = load_repo_files(repo_path)
    anomalies = analyze_project_structure(files, settings.max_file_lines)
    return {"files_analyzed": len(files), "anomalies": anomalies}, EXIT_SUCCESS


def cmd_run(args: argparse.Namespace) -> tuple[dict, int]:
    # Lazy imports: avoid loading anthropic/openai/langgraph for other commands
    from patchloop.agents.patch_generator import LLMPatchGenerator
    from patchloop.config import PatchLoopSettings
    from patchloop.orchestrator.graph import Orchestrator

    repo_path = validate_repo_path(args.repo_path)
    steps, plan_goal = load_plan(args.plan)
    settings = PatchLoopSettings.from_env(
        model=args.model,
        llm_provider=args.llm_provider,
        llm_fallback_provider=args.llm_fallback_provider,
        allow_llm_fallback=args.allow_llm_fallback,
        max_retries_per_step=args.max_retries,
        enable_reflection=False if args.no_reflection else None,
    )
    files = {entry.file_path: entry.content for entry in load_repo_files(repo_path)}

    generator = LLMPatchGenerator(
        model=settings.model,
        llm_provider=settings.llm_provider,
        llm_fallback_provider=settings.llm_fallback_provider,
        allow_fallback=settings.allow_llm_fallback,
    )
    orchestrator = Orchestrator(generator, settings=settings)
    state = orchestrator.run_plan(steps, files, goal=args.goal or plan_goal)

    report = state["consistency_report"]
    complete = all(step.status == StepStatus.COMPLETED for step in state["steps"])
    consistent = report is None or report.consistent
    result = {
        "goal": state["goal"],
        "steps": state["steps"],
        "results": state["results"],
        "operations": state["operations"],
        "consistency_report": report,
        "errors": state["errors"],
        "telemetry": dict(orchestrator.telemetry),
        "written": [],
    }
    if args.write and consistent:
        result["written"] = write_operations(repo_path, state["operations"])
    return result, EXIT_SUCCESS if complete and consistent else EXIT_REJECTED


COMMANDS = {
    "verify": cmd_verify,
    "apply": cmd_apply,
    "analyze": cmd_analyze,
    "run": cmd_run,
}


# ----------------------------------------------------------------------
# Output
# ----------------------------------------------------------------------


def print_result_human(command: str, result: dict) -> None:
    """Print results in human-readable format."""
    print(f"\n{'='*60}")
    print(f"patchloop {command}")
    print(f"{'='*60}")

    for item in result.get("patches", []):
        verification = item["verification"]
        status = "ok" if verification.valid else "INVALID"
        print(f"\n{item['file_path']} ({item['hunks']} hunks): {status}")
        for issue in verification.issues:
            print(f"  - {issue}")
        for suggestion in verification.suggestions:
            print(f"  ~ {suggestion}")

    for applied in result.get("applied", []):
        print(
            f"\n{applied.file_path}: {applied.hunks_applied} applied, "
            f"{applied.hunks_failed} failed"
        )

    if "anomalies" in result:
        print(f"\nFiles analyzed: {result['files_analyzed']}")
        print(f"Anomalies: {len(result['anomalies'])}")
        for anomaly in result["anomalies"]:
            print(f"  [{anomaly.kind}] {anomaly.message}")

    steps = result.get("steps", [])
    if steps:
        status_counts: dict[str, int] = {}
        for step in steps:
            status_counts[step.status.value] = status_counts.get(step.status.value, 0) + 1
        print(f"\nSteps ({len(steps)} total):")
        for status, count in sorted(status_counts.items()):
            print(f"  {status}: {count}")
        print(f"\nOperations: {len(result.get('operations', []))}")

    report = result.get("consistency_report")
    if report is not None:
        verdict = "consistent" if report.consistent else "INCONSISTENT"
        print(f"\nConsistency: {verdict} ({report.files_checked} files checked)")
        for issue in report.issues:
            print(f"  - {issue.description}")

    written = result.get("written", [])
    if written:
        print(f"\nWritten ({len(written)}):")
        for path in written:
            print(f"  - {path}")

    errors = result.get("errors", [])
    if errors:
        print(f"\nErrors ({len(errors)}):")
        for err in errors:
            print(f"  - {err}")

    print(f"\n{'='*60}")


def _handle_error(label: str, exc: BaseException, verbose: bool, exit_code: int) -> int:
    """Print error message to stderr and return the exit code."""
    print(f"{label}: {exc}", file=sys.stderr)
    if verbose:
        traceback.print_exc(file=sys.stderr)
    return exit_code


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Args:
        argv: Command-line arguments (defaults to sys.argv[1:]).

    Returns:
        Exit code integer.
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        result, exit_code = COMMANDS[args.command](args)

        if args.output_json:
            print(format_result_json(result))
        else:
            print_result_human(args.command, result)
        return exit_code

    except InvalidInputError as exc:
        return _handle_error("Error", exc, args.verbose, EXIT_INVALID_INPUT)

    except AgentError as exc:
        return _handle_error("Agent error", exc, args.verbose, EXIT_AGENT_ERROR)

    except OrchestratorError as exc:
        return _handle_error("Orchestrator error", exc, args.verbose, EXIT_ORCHESTRATOR_ERROR)

    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_KEYBOARD_INTERRUPT

    except Exception as exc:
        return _handle_error("Unexpected error", exc, args.verbose, EXIT_UNEXPECTED)


if __name__ == "__main__":
    sys.exit(main())
