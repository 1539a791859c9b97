"""Unit tests for the CLI module (patchloop.cli.main)."""

import json

import pytest
from unittest.mock import MagicMock, patch

from patchloop.cli import main as cli
from patchloop.cli.main import (
    EXIT_AGENT_ERROR,
    EXIT_INVALID_INPUT,
    EXIT_KEYBOARD_INTERRUPT,
    EXIT_REJECTED,
    EXIT_SUCCESS,
    EXIT_UNEXPECTED,
    InvalidInputError,
    build_parser,
    format_result_json,
    load_plan,
    load_repo_files,
    main,
    validate_repo_path,
    write_operations,
)
from patchloop.models import (
    FileOperation,
    Hunk,
    OperationType,
    Patch,
    VerificationResult,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

B_CHANGE = (
    "--- a/b.ts\n+++ b/b.ts\n@@ -3,1 +3,1 @@\n"
    "-export const value = foo();\n"
    "+export const value = foo() + 1;\n"
)
UNEXPORT_FOO = (
    "--- a/a.ts\n+++ b/a.ts\n@@ -1,1 +1,1 @@\n"
    "-export function foo() {\n"
    "+function foo() {\n"
)
CSS_HEADER = (
    "--- a/{path}\n+++ b/{path}\n@@ -1,2 +1,3 @@\n"
    "+/* header */\n"
    " a {{}}\n"
    " b {{}}\n"
)


@pytest.fixture
def repo(tmp_path, export_pair_files, monkeypatch):
    """Repository with a.ts/b.ts plus files the loader must ignore."""
    monkeypatch.chdir(tmp_path)
    root = tmp_path / "repo"
    root.mkdir()
    for name, content in export_pair_files.items():
        (root / name).write_text(content)
    (root / "node_modules").mkdir()
    (root / "node_modules" / "dep.ts").write_text("export const dep = 1;\n")
    (root / "README.md").write_text("# readme\n")
    return root


def write_input(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


def run_json(capsys, argv):
    code = main(["--output-json", *argv])
    return code, json.loads(capsys.readouterr().out)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------

class TestParser:

    def test_subcommand_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_run_defaults(self):
        args = build_parser().parse_args(["run", "plan.json", "."])
        assert args.command == "run"
        assert args.max_retries is None
        assert args.allow_llm_fallback is None
        assert args.no_reflection is False
        assert args.write is False

    def test_global_flags(self):
        args = build_parser().parse_args(["--verbose", "--output-json", "analyze", ".", "--max-lines", "50"])
        assert args.verbose is True
        assert args.output_json is True
        assert args.max_lines == 50

    def test_unknown_provider_rejected(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "plan.json", ".", "--llm-provider", "mistral"])


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

class TestInputs:

    def test_validate_repo_path(self, repo):
        assert validate_repo_path(str(repo)) == repo.resolve()

    def test_validate_repo_path_missing(self, tmp_path):
        with pytest.raises(InvalidInputError, match="not a valid directory"):
            validate_repo_path(str(tmp_path / "nope"))

    def test_load_repo_files_filters(self, repo):
        """Only supported files outside excluded directories are loaded, sorted."""
        entries = load_repo_files(repo.resolve())
        assert [e.file_path for e in entries] == ["a.ts", "b.ts"]

    def test_load_plan_list(self, tmp_path):
        path = write_input(tmp_path, "plan.json", json.dumps([
            {"id": "s1", "file_path": "a.ts", "description": "do it"},
        ]))
        steps, goal = load_plan(path)
        assert [s.id for s in steps] == ["s1"]
        assert goal == ""

    def test_load_plan_object(self, tmp_path):
        path = write_input(tmp_path, "plan.json", json.dumps({
            "goal": "tidy",
            "steps": [{"id": "s1", "file_path": "a.ts", "description": "do it", "action_type": "inspect"}],
        }))
        steps, goal = load_plan(path)
        assert goal == "tidy"
        assert steps[0].action_type.value == "inspect"

    @pytest.mark.parametrize("text,match", [
        ("{not json", "not valid JSON"),
        ('"steps"', "must be a list"),
        ('[{"id": "s1"}]', "Invalid step"),
        ('[{"id": "s1", "file_path": "a", "description": "x"},'
         ' {"id": "s1", "file_path": "b", "description": "y"}]', "duplicate step ids"),
    ])
    def test_load_plan_rejects(self, tmp_path, text, match):
        with pytest.raises(InvalidInputError, match=match):
            load_plan(write_input(tmp_path, "plan.json", text))

    def test_missing_input_file(self, tmp_path):
        with pytest.raises(InvalidInputError, match="Cannot read"):
            load_plan(str(tmp_path / "missing.json"))


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------

class TestOutputs:

    def test_write_operations(self, tmp_path):
        root = tmp_path.resolve()
        (root / "old.ts").write_text("x")
        ops = [
            FileOperation(type=OperationType.CREATE, file_path="src/new.ts", content="n\n"),
            FileOperation(type=OperationType.DELETE, file_path="old.ts"),
        ]

        written = write_operations(root, ops)

        assert written == ["src/new.ts", "old.ts"]
        assert (root / "src" / "new.ts").read_text() == "n\n"
        assert not (root / "old.ts").exists()

    def test_write_outside_repo_rejected(self, tmp_path):
        """One escaping path rejects the batch before anything is written."""
        root = (tmp_path / "repo")
        root.mkdir()
        ops = [
            FileOperation(type=OperationType.CREATE, file_path="ok.ts", content="x"),
            FileOperation(type=OperationType.CREATE, file_path="../evil.ts", content="x"),
        ]
        with pytest.raises(InvalidInputError, match="outside the repository"):
            write_operations(root.resolve(), ops)
        assert not (root / "ok.ts").exists()

    def test_format_result_json_models(self):
        result = {
            "verification": VerificationResult(valid=False, issues=["bad"]),
            "patches": [Patch(file_path="a.ts", hunks=[Hunk(start_line=1, end_line=0, new_lines=["x"])])],
            "count": 2,
        }
        data = json.loads(format_result_json(result))
        assert data["verification"] == {"valid": False, "issues": ["bad"], "suggestions": []}
        assert data["patches"][0]["hunks"][0]["new_lines"] == ["x"]
        assert data["count"] == 2


# ---------------------------------------------------------------------------
# Commands via main()
# ---------------------------------------------------------------------------

class TestVerifyApply:

    def test_verify_valid(self, repo, tmp_path, capsys):
        diff = write_input(tmp_path, "change.diff", B_CHANGE)
        code, data = run_json(capsys, ["verify", diff, str(repo)])

        assert code == EXIT_SUCCESS
        assert data["valid"] is True
        assert data["patches"][0]["file_path"] == "b.ts"

    def test_verify_mismatch_rejected(self, repo, tmp_path, capsys):
        bad = B_CHANGE.replace("-export const value = foo();", "-something else entirely")
        code, data = run_json(capsys, ["verify", write_input(tmp_path, "bad.diff", bad), str(repo)])

        assert code == EXIT_REJECTED
        assert data["valid"] is False
        assert data["patches"][0]["verification"]["issues"]

    def test_malformed_diff_is_agent_error(self, repo, tmp_path, capsys):
        diff = write_input(tmp_path, "bad.diff", "--- a/b.ts\n+++ b/b.ts\n@@ -3,2 +3,2 @@\n-x\n")
        assert main(["verify", diff, str(repo)]) == EXIT_AGENT_ERROR
        assert "Invalid unified diff" in capsys.readouterr().err

    def test_apply_report_only(self, repo, tmp_path, capsys):
        diff = write_input(tmp_path, "change.diff", B_CHANGE)
        code, data = run_json(capsys, ["apply", diff, str(repo)])

        assert code == EXIT_SUCCESS
        assert data["consistency_report"]["consistent"] is True
        assert data["applied"][0]["success"] is True
        assert data["written"] == []
        assert "foo();\n" in (repo / "b.ts").read_text()

    def test_apply_write(self, repo, tmp_path, capsys):
        diff = write_input(tmp_path, "change.diff", B_CHANGE)
        code, data = run_json(capsys, ["apply", diff, str(repo), "--write"])

        assert code == EXIT_SUCCESS
        assert data["written"] == ["b.ts"]
        assert "foo() + 1;" in (repo / "b.ts").read_text()

    def test_apply_inconsistent_batch_rejected(self, repo, tmp_path, capsys):
        """Removing an export that b.ts imports rejects the whole batch."""
        diff = write_input(tmp_path, "unexport.diff", UNEXPORT_FOO)
        code, data = run_json(capsys, ["apply", diff, str(repo), "--write"])

        assert code == EXIT_REJECTED
        assert data["consistency_report"]["consistent"] is False
        assert data["consistency_report"]["issues"][0]["symbol"] == "foo"
        assert (repo / "a.ts").read_text().startswith("export function foo")

    def test_apply_to_unsupported_file_keeps_content(self, repo, tmp_path, capsys):
        """Files of any type named by the diff are read from disk before patching."""
        (repo / "styles.css").write_text("a {}\nb {}\nc {}\n")
        diff = write_input(tmp_path, "css.diff", CSS_HEADER.format(path="styles.css"))
        code, data = run_json(capsys, ["apply", diff, str(repo), "--write"])

        assert code == EXIT_SUCCESS
        assert data["written"] == ["styles.css"]
        assert (repo / "styles.css").read_text() == "/* header */\na {}\nb {}\nc {}\n"

    def test_apply_context_missing_for_new_file_rejected(self, repo, tmp_path, capsys):
        """A diff whose surrounding lines don't exist cannot create the file."""
        diff = write_input(tmp_path, "css.diff", CSS_HEADER.format(path="absent.css"))
        code, data = run_json(capsys, ["apply", diff, str(repo), "--write"])

        assert code == EXIT_REJECTED
        assert data["consistency_report"]["issues"][0]["kind"] == "patch_failed"
        assert not (repo / "absent.css").exists()

    def test_verify_reads_unsupported_file(self, repo, tmp_path, capsys):
        (repo / "styles.css").write_text("a {}\nb {}\nc {}\n")
        diff = write_input(tmp_path, "css.diff", CSS_HEADER.format(path="styles.css"))
        code, data = run_json(capsys, ["verify", diff, str(repo)])

        assert code == EXIT_SUCCESS
        assert data["valid"] is True

    def test_human_output(self, repo, tmp_path, capsys):
        diff = write_input(tmp_path, "change.diff", B_CHANGE)
        assert main(["apply", diff, str(repo)]) == EXIT_SUCCESS
        out = capsys.readouterr().out
        assert "patchloop apply" in out
        assert "Consistency: consistent" in out


class TestAnalyze:

    def test_reports_cycle_and_long_files(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        monkeypatch.delenv("PATCHLOOP_MAX_FILE_LINES", raising=False)
        root = tmp_path / "repo"
        (root / "src").mkdir(parents=True)
        (root / "src" / "A.ts").write_text("import { b } from './B';\nexport const a = 1;\n")
        (root / "src" / "B.ts").write_text("import { a } from './A';\nexport const b = 2;\n")

        code, data = run_json(capsys, ["analyze", str(root), "--max-lines", "2"])

        assert code == EXIT_SUCCESS
        assert data["files_analyzed"] == 2
        kinds = sorted(a["kind"] for a in data["anomalies"])
        assert kinds == ["circular_dependency", "file_too_long", "file_too_long"]

    def test_invalid_repo(self, tmp_path, capsys):
        assert main(["analyze", str(tmp_path / "missing")]) == EXIT_INVALID_INPUT
        assert "not a valid directory" in capsys.readouterr().err


class TestRun:

    @pytest.fixture
    def plan(self, tmp_path):
        return write_input(tmp_path, "plan.json", json.dumps({
            "goal": "bump value",
            "steps": [{"id": "s1", "file_path": "b.ts", "description": "add one"}],
        }))

    @pytest.fixture
    def generator(self, mock_generator):
        mock_generator.generate_patch.return_value = Patch(
            file_path="b.ts",
            hunks=[Hunk(
                start_line=3,
                end_line=3,
                old_lines=["export const value = foo();"],
                new_lines=["export const value = foo() + 1;"],
            )],
        )
        return mock_generator

    def test_run_writes_operations(self, repo, plan, generator, capsys):
        with patch("patchloop.agents.patch_generator.LLMPatchGenerator", return_value=generator) as cls:
            code, data = run_json(capsys, ["run", plan, str(repo), "--write", "--max-retries", "0"])

        assert code == EXIT_SUCCESS
        assert data["goal"] == "bump value"
        assert data["written"] == ["b.ts"]
        assert data["telemetry"]["steps_completed"] == 1
        assert "foo() + 1;" in (repo / "b.ts").read_text()
        assert cls.call_args.kwargs["llm_provider"] == "auto"

    def test_run_failed_step_rejected(self, repo, plan, mock_generator, capsys):
        from patchloop.agents.exceptions import GenerationError

        mock_generator.generate_patch.side_effect = GenerationError("down")
        with patch("patchloop.agents.patch_generator.LLMPatchGenerator", return_value=mock_generator):
            code, data = run_json(capsys, ["run", plan, str(repo), "--max-retries", "0", "--write"])

        assert code == EXIT_REJECTED
        assert data["results"][0]["status"] == "failed"
        assert data["written"] == []

    def test_run_goal_override_and_no_reflection(self, repo, plan, generator, capsys):
        with patch("patchloop.agents.patch_generator.LLMPatchGenerator", return_value=generator):
            code, data = run_json(capsys, [
                "run", plan, str(repo), "--goal", "other goal", "--no-reflection",
            ])

        assert code == EXIT_SUCCESS
        assert data["goal"] == "other goal"
        assert data["results"][0]["reflection"] is None
        generator.review_logic.assert_not_called()

    def test_run_bad_plan(self, repo, tmp_path):
        plan = write_input(tmp_path, "plan.json", "{oops")
        assert main(["run", plan, str(repo)]) == EXIT_INVALID_INPUT


class TestErrorHandling:

    def test_keyboard_interrupt(self, monkeypatch, tmp_path):
        monkeypatch.setitem(cli.COMMANDS, "analyze", MagicMock(side_effect=KeyboardInterrupt))
        assert main(["analyze", str(tmp_path)]) == EXIT_KEYBOARD_INTERRUPT

    def test_unexpected_error(self, monkeypatch, tmp_path, capsys):
        monkeypatch.setitem(cli.COMMANDS, "analyze", MagicMock(side_effect=RuntimeError("kaboom")))
        assert main(["analyze", str(tmp_path)]) == EXIT_UNEXPECTED
        assert "Unexpected error: kaboom" in capsys.readouterr().err
