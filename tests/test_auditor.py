"""Tests for the ConsistencyAuditor (cross-file import/export checking)."""

import pytest

from patchloop.agents.consistency_auditor import ConsistencyAuditor
from patchloop.agents.exceptions import ConsistencyError
from patchloop.models import FileEntry, Hunk, Patch


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def unexport_foo_patch() -> Patch:
    """a.ts: turn 'export function foo' into a private function."""
    return Patch(
        file_path="a.ts",
        hunks=[Hunk(
            start_line=1,
            end_line=1,
            old_lines=["export function foo() {"],
            new_lines=["function foo() {"],
        )],
        description="Make foo private",
    )


def touch_b_patch() -> Patch:
    """b.ts: change the usage line but keep importing foo."""
    return Patch(
        file_path="b.ts",
        hunks=[Hunk(
            start_line=3,
            end_line=3,
            old_lines=["export const value = foo();"],
            new_lines=["export const value = foo() + 1;"],
        )],
        description="Adjust value",
    )


# ---------------------------------------------------------------------------
# check
# ---------------------------------------------------------------------------

class TestCheck:

    def test_removed_export_reports_exactly_one_issue(self, export_pair_files):
        """Un-exporting foo while b.ts imports it yields one issue naming both files."""
        report = ConsistencyAuditor().check(
            [unexport_foo_patch(), touch_b_patch()], export_pair_files
        )

        assert report.consistent is False
        assert len(report.issues) == 1
        issue = report.issues[0]
        assert issue.kind == "import"
        assert issue.symbol == "foo"
        assert issue.importer == "b.ts"
        assert issue.exporter == "a.ts"
        assert "foo" in issue.description
        assert report.files_checked == 2

    def test_consistent_batch(self, export_pair_files):
        """Patches that keep every imported symbol exported are consistent."""
        report = ConsistencyAuditor().check([touch_b_patch()], export_pair_files)
        assert report.consistent is True
        assert report.issues == []

    def test_accepts_file_entry_list(self, export_pair_files):
        """The file set may be given as FileEntry objects."""
        entries = [FileEntry(file_path=p, content=c) for p, c in export_pair_files.items()]
        report = ConsistencyAuditor().check([unexport_foo_patch()], entries)
        assert len(report.issues) == 1

    def test_unpatched_exporters_are_not_checked(self):
        """Imports from files outside the patched set are ignored."""
        files = {
            "a.ts": "export const a = 1;\n",
            "b.ts": "import { missing } from './c';\nexport const b = 1;\n",
            "c.ts": "export const c = 1;\n",
        }
        patch = Patch(
            file_path="a.ts",
            hunks=[Hunk(start_line=1, end_line=1, old_lines=["export const a = 1;"],
                        new_lines=["export const a = 2;"])],
        )
        assert ConsistencyAuditor().check([patch], files).consistent is True

    def test_default_and_star_exports_are_unchecked(self):
        """Default imports and star re-exports never produce issues."""
        files = {
            "lib.ts": "export * from './impl';\nexport default 1;\n",
            "impl.ts": "export const x = 1;\n",
            "app.ts": "import lib, { anything } from './lib';\nconsole.log(lib, anything);\n",
        }
        patch = Patch(
            file_path="lib.ts",
            hunks=[Hunk(start_line=2, end_line=2, old_lines=["export default 1;"],
                        new_lines=["export default 2;"])],
        )
        assert ConsistencyAuditor().check([patch], files).consistent is True

    def test_failed_patch_is_reported(self, export_pair_files):
        """A patch that does not apply becomes a patch_failed issue."""
        bad = Patch(
            file_path="a.ts",
            hunks=[Hunk(start_line=1, end_line=1, old_lines=["missing()"], new_lines=["x"])],
        )
        report = ConsistencyAuditor().check([bad], export_pair_files)

        assert report.consistent is False
        assert report.issues[0].kind == "patch_failed"
        assert report.issues[0].exporter == "a.ts"

    def test_sequential_patches_on_same_file(self, export_pair_files):
        """Two patches to one file apply one after the other."""
        first = Patch(
            file_path="a.ts",
            hunks=[Hunk(start_line=5, end_line=5, old_lines=["export const bar = 2;"],
                        new_lines=["export const bar = 3;"])],
        )
        second = Patch(
            file_path="a.ts",
            hunks=[Hunk(start_line=5, end_line=5, old_lines=["export const bar = 3;"],
                        new_lines=["export const bar = 4;"])],
        )
        report = ConsistencyAuditor().check([first, second], export_pair_files)
        assert report.consistent is True


# ---------------------------------------------------------------------------
# ensure_consistent
# ---------------------------------------------------------------------------

def test_ensure_consistent_raises_with_report(export_pair_files):
    """A rejected batch raises ConsistencyError carrying the report."""
    with pytest.raises(ConsistencyError) as exc_info:
        ConsistencyAuditor().ensure_consistent([unexport_foo_patch()], export_pair_files)

    assert exc_info.value.report is not None
    assert exc_info.value.report.issues[0].symbol == "foo"


def test_ensure_consistent_returns_report(export_pair_files):
    report = ConsistencyAuditor().ensure_consistent([touch_b_patch()], export_pair_files)
    assert report.consistent is True


# ---------------------------------------------------------------------------
# find_broken_references / audit_contents
# ---------------------------------------------------------------------------

def test_find_broken_references(export_pair_files):
    """Removing an export that another file imports is reported."""
    before = export_pair_files["a.ts"]
    after = before.replace("export function foo", "function foo")
    others = {"b.ts": export_pair_files["b.ts"]}

    broken = ConsistencyAuditor().find_broken_references("a.ts", before, after, others)

    assert len(broken) == 1
    assert broken[0].importer == "b.ts"
    assert broken[0].symbol == "foo"


def test_find_broken_references_ignores_unimported_removals(export_pair_files):
    """Removing bar, which nobody imports, breaks nothing."""
    before = export_pair_files["a.ts"]
    after = before.replace("export const bar", "const bar")
    others = {"b.ts": export_pair_files["b.ts"]}
    assert ConsistencyAuditor().find_broken_references("a.ts", before, after, others) == []


def test_audit_contents_only_checks_patched_exporters(export_pair_files):
    contents = dict(export_pair_files)
    contents["a.ts"] = contents["a.ts"].replace("export function foo", "function foo")

    assert ConsistencyAuditor().audit_contents(contents, set()).consistent is True
    assert ConsistencyAuditor().audit_contents(contents, {"a.ts"}).consistent is False
