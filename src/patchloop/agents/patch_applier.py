"""Patch verifier/applier: places hunks onto file content, exactly or fuzzily."""

import logging
from typing import Callable

from patchloop.agents.exceptions import PatchParseError
from patchloop.models.patch_models import ApplyResult, Hunk, Patch, VerificationResult
from patchloop.utils.diff_generator import parse_unified_diff

logger = logging.getLogger(__name__)


def detect_line_ending(content: str) -> str:
    """Return the CRLF sequence when content uses it, else a bare newline."""
    return "\r\n" if "\r\n" in content else "\n"


def split_lines(content: str) -> list[str]:
    """Split content on its line ending; a trailing newline leaves a final empty entry."""
    return content.split(detect_line_ending(content))


def line_count(lines: list[str]) -> int:
    """Number of real lines, ignoring the empty entry after a trailing newline."""
    if lines == [""]:
        return 0
    if lines and lines[-1] == "":
        return len(lines) - 1
    return len(lines)


def lines_match(actual: list[str], expected: list[str], fuzzy: bool = False) -> bool:
    """Compare two line lists, ignoring surrounding whitespace when fuzzy."""
    if len(actual) != len(expected):
        return False
    if fuzzy:
        return all(a.strip() == e.strip() for a, e in zip(actual, expected))
    return actual == expected


def find_by_context(
    lines: list[str],
    context_before: list[str],
    target_lines: list[str],
) -> int:
    """Locate target_lines by whitespace-insensitive comparison with context.

    The trimmed context_before + target_lines are joined into one search
    pattern. A window of the same shape slides over the file and the first
    window that contains the pattern, or is contained by it, wins. Windows
    carrying the full context are tried before windows clipped at the top
    of the file; a clipped window must equal the clipped pattern line for
    line.

    Args:
        lines: Current file lines.
        context_before: Lines expected immediately above the target.
        target_lines: Lines the hunk replaces; empty for an insertion.

    Returns:
        0-based index where target_lines start, or -1 if not found.
    """
    expected = context_before + target_lines
    if not any(line.strip() for line in expected):
        return -1
    pattern = "\n".join(line.strip() for line in expected)
    ctx_len = len(context_before)
    n = len(target_lines)
    last_start = len(lines) - n

    def window_matches(start: int, end: int) -> bool:
        window = "\n".join(line.strip() for line in lines[start:end])
        return pattern in window or (window != "" and window in pattern)

    for i in range(ctx_len, last_start + 1):
        if window_matches(i - ctx_len, i + n):
            return i

    # Target close to the top of the file: only the last i context lines fit
    for i in range(0, min(ctx_len, last_start + 1)):
        if n == 0 and i == 0:
            continue
        if lines_match(lines[0:i + n], context_before[ctx_len - i:] + target_lines, fuzzy=True):
            return i

    return -1


def find_following(lines: list[str], context_after: list[str]) -> int:
    """Return the first index where context_after starts, or -1.

    Used to place an insertion that has no leading context; the new lines go
    immediately above the returned index.
    """
    if not any(line.strip() for line in context_after):
        return -1
    k = len(context_after)
    for i in range(0, len(lines) - k + 1):
        if lines_match(lines[i:i + k], context_after, fuzzy=True):
            return i
    return -1


def _following_lines_match(lines: list[str], index: int, context_after: list[str]) -> bool:
    if not context_after:
        return True
    return lines_match(lines[index:index + len(context_after)], context_after, fuzzy=True)


def _insertion_context_matches(lines: list[str], index: int, hunk: Hunk) -> bool:
    """True when the lines around index agree with the hunk's context."""
    if hunk.context_before:
        ctx_start = index - len(hunk.context_before)
        if ctx_start < 0 or not lines_match(
            lines[ctx_start:index], hunk.context_before, fuzzy=True
        ):
            return False
    return _following_lines_match(lines, index, hunk.context_after)


def _hunk_label(index: int, hunk: Hunk) -> str:
    return f"Hunk {index + 1} ({hunk.id})"


def parse_patches(diff_text: str) -> list[Patch]:
    """Parse unified-diff text, raising PatchParseError on malformed input."""
    try:
        return parse_unified_diff(diff_text)
    except ValueError as exc:
        raise PatchParseError(f"Invalid unified diff: {exc}") from exc


class PatchApplier:
    """Verifies and applies patches against in-memory file content."""

    def __init__(self, on_progress: Callable[[str], None] | None = None) -> None:
        self._on_progress = on_progress

    def _progress(self, message: str) -> None:
        logger.debug(message)
        if self._on_progress is not None:
            self._on_progress(message)

    def verify(self, patch: Patch, content: str) -> VerificationResult:
        """Check that every hunk fits content; advisory only.

        A content mismatch that context search can relocate is reported as
        a suggestion, not an issue, because apply() can still place it.
        """
        issues: list[str] = []
        suggestions: list[str] = []
        lines = split_lines(content)
        total = line_count(lines)

        if not patch.matches_base(content):
            suggestions.append(
                f"{patch.file_path} changed since the patch was generated; "
                "hunks will be located by context"
            )

        for index, hunk in enumerate(patch.hunks):
            label = _hunk_label(index, hunk)

            if hunk.start_line < 1:
                issues.append(f"{label}: start line {hunk.start_line} is before line 1")
                continue

            if hunk.is_insertion:
                if hunk.start_line > total + 1:
                    issues.append(
                        f"{label}: insertion point {hunk.start_line} out of range "
                        f"(file has {total} lines)"
                    )
                    continue
                position, relocated = self._locate(lines, hunk)
                if position == -1:
                    issues.append(
                        f"{label}: context around insertion point {hunk.start_line} "
                        "doesn't match current file content"
                    )
                    continue
                if relocated:
                    suggestions.append(
                        f"{label}: insertion point might be line {position + 1} "
                        f"instead of {hunk.start_line}"
                    )
            else:
                if hunk.end_line < hunk.start_line:
                    issues.append(
                        f"{label}: end line {hunk.end_line} is before start line {hunk.start_line}"
                    )
                    continue
                span = hunk.end_line - hunk.start_line + 1
                if len(hunk.old_lines) != span:
                    issues.append(
                        f"{label}: declares {len(hunk.old_lines)} old lines "
                        f"but range {hunk.start_line}-{hunk.end_line} covers {span}"
                    )
                    continue

                if hunk.end_line > total:
                    issues.append(
                        f"{label}: end line {hunk.end_line} out of range "
                        f"(file has {total} lines)"
                    )
                    found = find_by_context(lines, hunk.context_before, hunk.old_lines)
                    if found != -1:
                        suggestions.append(
                            f"{label}: content might be at line {found + 1} "
                            f"instead of {hunk.start_line}"
                        )
                    continue

                actual = lines[hunk.start_line - 1:hunk.end_line]
                if not lines_match(actual, hunk.old_lines):
                    found = find_by_context(lines, hunk.context_before, hunk.old_lines)
                    if found != -1 and found != hunk.start_line - 1:
                        suggestions.append(
                            f"{label}: content might be at line {found + 1} "
                            f"instead of {hunk.start_line}"
                        )
                    elif found != -1:
                        suggestions.append(
                            f"{label}: lines {hunk.start_line}-{hunk.end_line} differ only in whitespace"
                        )
                    else:
                        issues.append(
                            f"{label}: old lines don't match current file content "
                            f"at lines {hunk.start_line}-{hunk.end_line}"
                        )

            if hunk.context_before:
                before_idx = hunk.start_line - 1 - len(hunk.context_before)
                if before_idx >= 0:
                    actual_before = lines[before_idx:hunk.start_line - 1]
                    if not lines_match(actual_before, hunk.context_before):
                        suggestions.append(f"{label}: context before doesn't match exactly")

        issues.extend(self._overlap_issues(patch))

        return VerificationResult(
            valid=not issues,
            issues=issues,
            suggestions=suggestions,
        )

    def _overlap_issues(self, patch: Patch) -> list[str]:
        """Report hunks whose line spans intersect after sorting by start line.

        An insertion occupies its insertion point, so two insertions at the
        same line, or an insertion inside a replaced range, also conflict.
        """
        issues: list[str] = []
        ordered = sorted(enumerate(patch.hunks), key=lambda item: item[1].start_line)
        reach = None
        reach_label = ""
        for index, hunk in ordered:
            label = _hunk_label(index, hunk)
            if reach is not None and hunk.start_line <= reach:
                issues.append(f"{reach_label} and {label} overlap")
            end = max(hunk.end_line, hunk.start_line)
            if reach is None or end > reach:
                reach = end
                reach_label = label
        return issues

    def _locate(self, lines: list[str], hunk: Hunk) -> tuple[int, bool]:
        """Return (0-based index, relocated) for hunk, or (-1, False)."""
        total = line_count(lines)
        start = hunk.start_line - 1

        if hunk.is_insertion:
            if 0 <= start <= total and _insertion_context_matches(lines, start, hunk):
                return start, False
            if hunk.context_before:
                found = find_by_context(lines, hunk.context_before, [])
                if found != -1 and _following_lines_match(lines, found, hunk.context_after):
                    return found, True
                return -1, False
            if hunk.context_after:
                found = find_following(lines, hunk.context_after)
                return found, found != -1
            return -1, False

        if 0 <= start and hunk.end_line <= len(lines) and lines_match(
            lines[start:hunk.end_line], hunk.old_lines, fuzzy=True
        ):
            return start, False
        found = find_by_context(lines, hunk.context_before, hunk.old_lines)
        return found, found != -1

    def apply(self, patch: Patch, content: str) -> ApplyResult:
        """Apply hunks back to front so unapplied hunks keep their line numbers.

        Hunks that cannot be placed are recorded and skipped; the rest are
        still applied. success is True only when every hunk applied.
        """
        newline = detect_line_ending(content)
        lines = content.split(newline)
        errors: list[str] = []
        hunks_applied = 0
        hunks_failed = 0

        ordered = sorted(
            enumerate(patch.hunks),
            key=lambda item: (item[1].start_line, item[0]),
            reverse=True,
        )
        for index, hunk in ordered:
            label = _hunk_label(index, hunk)
            position, relocated = self._locate(lines, hunk)
            if position == -1:
                errors.append(
                    f"{label} at lines {hunk.start_line}-{hunk.end_line} couldn't be matched"
                )
                hunks_failed += 1
                continue

            lines[position:position + len(hunk.old_lines)] = hunk.new_lines
            hunks_applied += 1
            if relocated:
                self._progress(f"Applied {label} using context matching at line {position + 1}")
            else:
                self._progress(f"Applied {label} at lines {hunk.start_line}-{hunk.end_line}")

        if hunks_failed:
            logger.info(
                "Patch %s for %s: %d/%d hunks failed",
                patch.id, patch.file_path, hunks_failed, len(patch.hunks),
            )

        return ApplyResult(
            success=hunks_failed == 0,
            file_path=patch.file_path,
            new_content=newline.join(lines),
            hunks_applied=hunks_applied,
            hunks_failed=hunks_failed,
            errors=errors,
        )

    def create_rollback_patch(self, patch: Patch) -> Patch:
        """Build the inverse patch, positioned against the patched content.

        Each hunk's old/new lines are swapped and its start line is shifted
        by the net line change of all hunks above it.
        """
        rollback_hunks: list[Hunk] = []
        delta = 0
        for hunk in sorted(patch.hunks, key=lambda h: h.start_line):
            start = hunk.start_line + delta
            rollback_hunks.append(Hunk(
                start_line=start,
                end_line=start + len(hunk.new_lines) - 1,
                old_lines=list(hunk.new_lines),
                new_lines=list(hunk.old_lines),
                context_before=list(hunk.context_before),
                context_after=list(hunk.context_after),
            ))
            delta += hunk.line_delta

        return Patch(
            file_path=patch.file_path,
            hunks=rollback_hunks,
            description=f"Rollback of {patch.id}: {patch.description}".rstrip(": "),
        )
