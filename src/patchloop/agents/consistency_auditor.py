"""Consistency Auditor agent: checks a patch batch for broken cross-file references."""

import logging

from patchloop.agents.dependency_graph import normalize_path, resolve_import
from patchloop.agents.exceptions import ConsistencyError
from patchloop.agents.patch_applier import PatchApplier
from patchloop.models.patch_models import Patch
from patchloop.models.report_models import ConsistencyIssue, ConsistencyReport
from patchloop.models.schemas import FileEntry, ModuleSymbols
from patchloop.utils.ast_parser import extract_module_symbols

logger = logging.getLogger(__name__)

# Import forms that do not name a specific export
UNCHECKED_IMPORTS = frozenset({"*", "default"})


def _as_content_map(files: dict[str, str] | list[FileEntry]) -> dict[str, str]:
    if isinstance(files, dict):
        return {normalize_path(path): content for path, content in files.items()}
    return {normalize_path(entry.file_path): entry.content for entry in files}


class ConsistencyAuditor:
    """Applies a batch of patches in memory and cross-checks imports against
    the exports of every patched file, before anything reaches disk."""

    def __init__(self, applier: PatchApplier | None = None) -> None:
        self._applier = applier or PatchApplier()

    def check(
        self,
        patches: list[Patch],
        file_contents: dict[str, str] | list[FileEntry],
    ) -> ConsistencyReport:
        """Apply patches sequentially per file, then audit the result.

        Patches for files absent from file_contents are applied to empty
        content. A patch that does not fully apply leaves its file unchanged
        and is reported as a patch_failed issue.
        """
        contents = _as_content_map(file_contents)
        touched: set[str] = set()
        failures: list[ConsistencyIssue] = []

        for patch in patches:
            path = normalize_path(patch.file_path)
            result = self._applier.apply(patch, contents.get(path, ""))
            if not result.success:
                failures.append(ConsistencyIssue(
                    kind="patch_failed",
                    exporter=path,
                    description=(
                        f"Patch {patch.id} for {path} did not apply: "
                        + "; ".join(result.errors)
                    ),
                ))
                continue
            contents[path] = result.new_content
            touched.add(path)

        report = self.audit_contents(contents, touched)
        report.issues = failures + report.issues
        report.consistent = not report.issues
        return report

    def audit_contents(
        self,
        contents: dict[str, str],
        patched_files: set[str],
    ) -> ConsistencyReport:
        """Report imports from patched_files whose symbol is no longer exported.

        Every file in contents is checked as an importer; only files in
        patched_files are checked as exporters.
        """
        contents = _as_content_map(contents)
        patched = {normalize_path(p) for p in patched_files}
        symbols = {path: extract_module_symbols(path, text) for path, text in contents.items()}
        issues = self._missing_imports(symbols, contents, patched)

        if issues:
            logger.info("Consistency audit found %d broken import(s)", len(issues))
        return ConsistencyReport(
            consistent=not issues,
            issues=issues,
            files_checked=len(contents),
        )

    def _missing_imports(
        self,
        symbols: dict[str, ModuleSymbols],
        contents: dict[str, str],
        exporters: set[str],
        only_symbols: dict[str, set[str]] | None = None,
    ) -> list[ConsistencyIssue]:
        issues: list[ConsistencyIssue] = []
        for importer, module in symbols.items():
            for binding in module.imports:
                if binding.imported in UNCHECKED_IMPORTS:
                    continue
                target = resolve_import(binding.source, importer, contents)
                if target is None or target == importer or target not in exporters:
                    continue
                if only_symbols is not None and binding.imported not in only_symbols.get(target, set()):
                    continue
                exported = symbols[target].exports
                if "*" in exported or binding.imported in exported:
                    continue
                issues.append(ConsistencyIssue(
                    kind="import",
                    importer=importer,
                    exporter=target,
                    symbol=binding.imported,
                    description=(
                        f"{importer} imports '{binding.imported}' from {target}, "
                        "which does not export it"
                    ),
                ))
        return issues

    def ensure_consistent(
        self,
        patches: list[Patch],
        file_contents: dict[str, str] | list[FileEntry],
    ) -> ConsistencyReport:
        """Like check(), but raise ConsistencyError when the batch is rejected."""
        report = self.check(patches, file_contents)
        if not report.consistent:
            summary = "; ".join(issue.description for issue in report.issues)
            raise ConsistencyError(f"Patch batch rejected: {summary}", report=report)
        return report

    def find_broken_references(
        self,
        file_path: str,
        before: str,
        after: str,
        all_files: dict[str, str],
    ) -> list[ConsistencyIssue]:
        """Report symbols removed from file_path that other files still import."""
        path = normalize_path(file_path)
        removed = (
            set(extract_module_symbols(path, before).exports)
            - set(extract_module_symbols(path, after).exports)
        )
        if not removed:
            return []

        contents = _as_content_map(all_files)
        contents[path] = after
        symbols = {p: extract_module_symbols(p, text) for p, text in contents.items()}
        return self._missing_imports(symbols, contents, {path}, only_symbols={path: removed})
