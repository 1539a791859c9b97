"""Reflection engine: ordered self-checks over a patched file, with a bounded fix loop."""

import logging
import re
from typing import Callable

from patchloop.agents.consistency_auditor import ConsistencyAuditor
from patchloop.agents.patch_applier import PatchApplier
from patchloop.agents.patch_generator import PatchGenerator
from patchloop.models.report_models import (
    IssueKind,
    IssueLocation,
    IssueSeverity,
    ReflectionContext,
    ReflectionIssue,
    ReflectionResult,
)
from patchloop.utils.ast_parser import (
    collect_declared_names,
    collect_identifier_counts,
    extract_import_bindings,
    is_supported_file,
    parse_content,
)
from patchloop.utils.diff_generator import detect_code_style

logger = logging.getLogger(__name__)

# Scoring
PASS_SCORE = 70
MAX_WARNINGS_BEFORE_REVISION = 3
SEVERITY_PENALTY = {
    IssueSeverity.ERROR: 20,
    IssueSeverity.WARNING: 5,
    IssueSeverity.INFO: 1,
}
DEFAULT_MAX_ITERATIONS = 5
EXPORTLESS_MODULE_MIN_CHARS = 100

INCOMPLETE_STATEMENTS = [
    (re.compile(r"^\s*(const|let|var)\s+\w+\s*$", re.MULTILINE), "Incomplete variable declaration"),
    (re.compile(r"^\s*if\s*\([^)]*$", re.MULTILINE), "Incomplete if statement"),
    (re.compile(r"^\s*for\s*\([^)]*$", re.MULTILINE), "Incomplete for loop"),
    (re.compile(r"=>\s*$", re.MULTILINE), "Arrow function missing body"),
]
LOCAL_DECLARATION_RE = re.compile(r"^(.*?)\b(?:const|let|var)\s+(\w+)\s*=", re.MULTILINE)
SPACE_INDENT_RE = re.compile(r"^  \S", re.MULTILINE)
TAB_INDENT_RE = re.compile(r"^\t\S", re.MULTILINE)

OPENERS = {"{": "}", "(": ")", "[": "]"}
CLOSERS = {v: k for k, v in OPENERS.items()}

BUILTIN_GLOBALS = frozenset({
    "Array", "Object", "String", "Number", "Boolean", "Function", "Symbol", "BigInt",
    "Promise", "Map", "Set", "WeakMap", "WeakSet", "Date", "RegExp", "Error",
    "TypeError", "RangeError", "SyntaxError", "ReferenceError", "JSON", "Math",
    "Intl", "Reflect", "Proxy", "Infinity", "NaN", "ArrayBuffer", "Uint8Array",
    "URL", "URLSearchParams", "Request", "Response", "Headers", "FormData", "Blob", "File",
    "React", "Component", "Fragment", "Suspense", "HTMLElement", "HTMLInputElement",
    "HTMLDivElement", "Event", "MouseEvent", "KeyboardEvent", "Element", "Node",
    "Record", "Partial", "Required", "Readonly", "Pick", "Omit", "Exclude", "Extract",
    "ReturnType", "Parameters", "NonNullable", "Awaited", "Iterable", "AsyncIterable",
})


def calculate_score(issues: list[ReflectionIssue]) -> int:
    """100 minus severity penalties, clamped to [0, 100]."""
    score = 100 - sum(SEVERITY_PENALTY[issue.severity] for issue in issues)
    return max(0, min(100, score))


def _issue(
    kind: IssueKind,
    severity: IssueSeverity,
    file_path: str,
    message: str,
    line: int | None = None,
    fix: str | None = None,
) -> ReflectionIssue:
    return ReflectionIssue(
        kind=kind,
        severity=severity,
        location=IssueLocation(file=file_path, line=line),
        message=message,
        suggested_fix=fix,
    )


def find_unbalanced_delimiters(content: str) -> list[tuple[str, int, str]]:
    """Scan for unbalanced (), [] and {} outside strings and comments.

    Returns:
        (char, line, problem) tuples where problem is "unmatched" for a
        stray closer and "unclosed" for an opener never closed.
    """
    problems: list[tuple[str, int, str]] = []
    stack: list[tuple[str, int]] = []
    line = 1
    i = 0
    n = len(content)
    while i < n:
        ch = content[i]
        nxt = content[i + 1] if i + 1 < n else ""
        if ch == "\n":
            line += 1
        elif ch == "/" and nxt == "/":
            while i < n and content[i] != "\n":
                i += 1
            continue
        elif ch == "/" and nxt == "*":
            end = content.find("*/", i + 2)
            end = n if end == -1 else end + 2
            line += content.count("\n", i, end)
            i = end
            continue
        elif ch in ("'", '"', "`"):
            j = i + 1
            while j < n and content[j] != ch:
                if content[j] == "\\":
                    j += 1
                elif content[j] == "\n" and ch != "`":
                    break
                j += 1
            line += content.count("\n", i + 1, min(j, n))
            i = j + 1
            continue
        elif ch in OPENERS:
            stack.append((ch, line))
        elif ch in CLOSERS:
            if stack and stack[-1][0] == CLOSERS[ch]:
                stack.pop()
            else:
                problems.append((ch, line, "unmatched"))
        i += 1

    problems.extend((char, opened, "unclosed") for char, opened in stack)
    return problems


class ReflectionEngine:
    """Runs the reflection passes and computes a confidence score.

    Goal alignment and logic review are delegated to the generator; they are
    skipped when no generator is configured.
    """

    def __init__(
        self,
        generator: PatchGenerator | None = None,
        applier: PatchApplier | None = None,
        auditor: ConsistencyAuditor | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        on_progress: Callable[[str], None] | None = None,
    ) -> None:
        self._generator = generator
        self._applier = applier or PatchApplier()
        self._auditor = auditor or ConsistencyAuditor(self._applier)
        self.max_iterations = max_iterations
        self._on_progress = on_progress
        self.passes: list[tuple[str, Callable[[ReflectionContext], list[ReflectionIssue]]]] = [
            ("goal_alignment", self._check_goal_alignment),
            ("syntax", self._check_syntax),
            ("imports", self._check_imports),
            ("exports", self._check_exports),
            ("unused_symbols", self._check_unused_symbols),
            ("style", self._check_style),
            ("logic", self._check_logic),
            ("cross_file", self._check_cross_file),
        ]

    def _progress(self, message: str) -> None:
        logger.debug(message)
        if self._on_progress is not None:
            self._on_progress(message)

    def reflect(self, context: ReflectionContext) -> ReflectionResult:
        """Run every pass once and score the result."""
        self._progress(f"Starting reflection on {context.file_path}")
        issues: list[ReflectionIssue] = []
        skipped: list[str] = []

        for name, check in self.passes:
            if name in ("goal_alignment", "logic"):
                if self._generator is None:
                    continue
                try:
                    found = check(context)
                except Exception as exc:
                    logger.warning("Reflection pass %s skipped for %s: %s", name, context.file_path, exc)
                    skipped.append(name)
                    continue
            else:
                found = check(context)
            if found:
                self._progress(f"{name}: {len(found)} issue(s)")
            issues.extend(found)

        score = calculate_score(issues)
        has_errors = any(i.severity == IssueSeverity.ERROR for i in issues)
        warnings = sum(1 for i in issues if i.severity == IssueSeverity.WARNING)
        suggestions = [
            f"{issue.kind.value}: {issue.suggested_fix}"
            for issue in issues
            if issue.suggested_fix and issue.severity != IssueSeverity.INFO
        ]
        self._progress(f"Reflection complete: score {score}/100, {len(issues)} issue(s)")

        return ReflectionResult(
            passed=not has_errors and score >= PASS_SCORE,
            score=score,
            issues=issues,
            suggestions=suggestions,
            requires_revision=(
                has_errors or warnings > MAX_WARNINGS_BEFORE_REVISION or score < PASS_SCORE
            ),
            patched_content=context.patched_content,
            skipped_passes=skipped,
        )

    def reflect_and_fix(
        self,
        context: ReflectionContext,
        max_iterations: int | None = None,
    ) -> ReflectionResult:
        """Reflect, ask for fixes of error-severity issues, and repeat.

        Runs at most max_iterations reflections and returns the last result.
        revised_patch is set when the returned content comes from a fix.
        A fix that does not apply cleanly to the original content is
        discarded and the current patch is reflected again.
        """
        limit = max(1, max_iterations if max_iterations is not None else self.max_iterations)
        current = context
        iteration = 0

        while True:
            iteration += 1
            self._progress(f"Reflection iteration {iteration}/{limit}")
            result = self.reflect(current)
            result.iterations = iteration
            if current.patch is not context.patch:
                result.revised_patch = current.patch

            if result.passed or not result.requires_revision:
                return result
            if iteration >= limit or self._generator is None:
                return result

            errors = [i for i in result.issues if i.severity == IssueSeverity.ERROR]
            if not errors:
                # Only error-severity issues are sent for fixing
                return result

            fixed = self._generator.generate_fix(current.patch, errors)
            applied = self._applier.apply(fixed, context.original_content)
            if not applied.success:
                logger.warning(
                    "Fix for %s did not apply cleanly: %s",
                    context.file_path, "; ".join(applied.errors),
                )
                continue
            current = current.model_copy(
                update={"patch": fixed, "patched_content": applied.new_content}
            )

    # ---- passes -------------------------------------------------------------

    def _check_goal_alignment(self, context: ReflectionContext) -> list[ReflectionIssue]:
        return list(self._generator.review_goal_alignment(context))

    def _check_logic(self, context: ReflectionContext) -> list[ReflectionIssue]:
        return list(self._generator.review_logic(context))

    def _check_syntax(self, context: ReflectionContext) -> list[ReflectionIssue]:
        issues = []
        for char, line, problem in find_unbalanced_delimiters(context.patched_content):
            if problem == "unmatched":
                expected = CLOSERS[char]
                issues.append(_issue(
                    IssueKind.SYNTAX, IssueSeverity.ERROR, context.file_path,
                    f"Unmatched '{char}' at line {line}", line,
                    f"Add matching '{expected}' or remove '{char}'",
                ))
            else:
                issues.append(_issue(
                    IssueKind.SYNTAX, IssueSeverity.ERROR, context.file_path,
                    f"Unclosed '{char}' from line {line}", line,
                    f"Add closing '{OPENERS[char]}'",
                ))

        for pattern, message in INCOMPLETE_STATEMENTS:
            match = pattern.search(context.patched_content)
            if match:
                line = context.patched_content.count("\n", 0, match.start()) + 1
                issues.append(_issue(
                    IssueKind.SYNTAX, IssueSeverity.WARNING, context.file_path, message, line,
                ))
        return issues

    def _check_imports(self, context: ReflectionContext) -> list[ReflectionIssue]:
        if not is_supported_file(context.file_path):
            return []
        tree = parse_content(context.file_path, context.patched_content)
        counts = collect_identifier_counts(tree)
        issues = []

        for binding in extract_import_bindings(tree):
            if counts.get(binding.local, 0) == 0:
                issues.append(_issue(
                    IssueKind.IMPORT, IssueSeverity.WARNING, context.file_path,
                    f"Imported '{binding.local}' from '{binding.source}' is not used",
                    binding.line,
                    f"Remove unused import '{binding.local}'",
                ))

        declared = collect_declared_names(tree)
        for name in sorted(counts):
            if not name[:1].isupper() or name in declared or name in BUILTIN_GLOBALS:
                continue
            issues.append(_issue(
                IssueKind.IMPORT, IssueSeverity.WARNING, context.file_path,
                f"'{name}' is used but not imported or declared",
                fix=f"Add import for '{name}'",
            ))
        return issues

    def _check_exports(self, context: ReflectionContext) -> list[ReflectionIssue]:
        content = context.patched_content
        is_module = context.file_path.endswith((".ts", ".tsx"))
        if is_module and len(content) > EXPORTLESS_MODULE_MIN_CHARS and not re.search(r"\bexport\s", content):
            return [_issue(
                IssueKind.EXPORT, IssueSeverity.INFO, context.file_path,
                "No exports found in module file",
            )]
        return []

    def _check_unused_symbols(self, context: ReflectionContext) -> list[ReflectionIssue]:
        content = context.patched_content
        issues = []
        seen: set[str] = set()
        for match in LOCAL_DECLARATION_RE.finditer(content):
            prefix, name = match.group(1), match.group(2)
            if name in seen or name.startswith("_") or re.search(r"\bexport\b", prefix):
                continue
            seen.add(name)
            if len(re.findall(rf"\b{re.escape(name)}\b", content)) == 1:
                line = content.count("\n", 0, match.start(2)) + 1
                issues.append(_issue(
                    IssueKind.UNUSED, IssueSeverity.WARNING, context.file_path,
                    f"Variable '{name}' is declared but never used", line,
                    f"Remove unused variable '{name}'",
                ))
        return issues

    def _check_style(self, context: ReflectionContext) -> list[ReflectionIssue]:
        original = context.original_content
        patched = context.patched_content
        if not original.strip():
            return []
        issues = []

        orig_spaces, orig_tabs = bool(SPACE_INDENT_RE.search(original)), bool(TAB_INDENT_RE.search(original))
        new_spaces, new_tabs = bool(SPACE_INDENT_RE.search(patched)), bool(TAB_INDENT_RE.search(patched))
        if orig_spaces and not orig_tabs and new_tabs:
            issues.append(_issue(
                IssueKind.STYLE, IssueSeverity.WARNING, context.file_path,
                "Changed from space to tab indentation",
                fix="Use consistent indentation with rest of file (spaces)",
            ))
        elif orig_tabs and not orig_spaces and new_spaces:
            issues.append(_issue(
                IssueKind.STYLE, IssueSeverity.WARNING, context.file_path,
                "Changed from tab to space indentation",
                fix="Use consistent indentation with rest of file (tabs)",
            ))

        before, after = detect_code_style(original), detect_code_style(patched)
        if before["quotes"] != after["quotes"]:
            issues.append(_issue(
                IssueKind.STYLE, IssueSeverity.INFO, context.file_path,
                "Quote style differs from original file",
                fix=f"Use {before['quotes']} quotes for consistency",
            ))
        if before["semicolons"] != after["semicolons"]:
            issues.append(_issue(
                IssueKind.STYLE, IssueSeverity.INFO, context.file_path,
                "Semicolon usage differs from original file",
            ))
        return issues

    def _check_cross_file(self, context: ReflectionContext) -> list[ReflectionIssue]:
        if not context.all_files:
            return []
        broken = self._auditor.find_broken_references(
            context.file_path,
            context.original_content,
            context.patched_content,
            context.all_files,
        )
        return [
            _issue(
                IssueKind.CONSISTENCY, IssueSeverity.ERROR, issue.importer or context.file_path,
                f"'{issue.symbol}' was removed from {context.file_path} "
                f"but is imported by {issue.importer}",
                fix=f"Update {issue.importer} to not use '{issue.symbol}' or restore the export",
            )
            for issue in broken
        ]
