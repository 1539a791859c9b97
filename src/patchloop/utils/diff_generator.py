"""Utilities for generating and parsing unified diffs."""

import difflib
import re

from patchloop.models.patch_models import Hunk, Patch

HUNK_HEADER_RE = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")
NO_NEWLINE_MARKER = "\\ No newline at end of file"


def generate_unified_diff(
    file_path: str,
    original_content: str,
    modified_content: str,
) -> str:
    """Generate a git-compatible unified diff.

    Args:
        file_path: Relative path from repo root (e.g. "src/app.tsx").
        original_content: File content before the edit.
        modified_content: File content after the edit.

    Returns:
        Unified diff string with a/ b/ prefixes. Empty string if no changes.
    """
    if original_content == modified_content:
        return ""

    original_lines = original_content.splitlines(keepends=True)
    modified_lines = modified_content.splitlines(keepends=True)

    diff_gen = difflib.unified_diff(
        original_lines,
        modified_lines,
        fromfile=f"a/{file_path}",
        tofile=f"b/{file_path}",
        lineterm="",
    )

    # Lines from keepends=True carry their own newline; strip before joining
    diff_lines = []
    for line in diff_gen:
        if line.endswith("\n"):
            diff_lines.append(line[:-1])
        else:
            diff_lines.append(line)

    return "\n".join(diff_lines)


def to_unified_diff(patch: Patch) -> str:
    """Serialize a Patch as unified-diff text.

    Context lines are emitted around each hunk so the text can be applied
    by standard tooling. context_before is clipped so the hunk header never
    points above line 1.

    Args:
        patch: The patch to serialize.

    Returns:
        Unified diff string. Hunks that change nothing are omitted.
    """
    out = [f"--- a/{patch.file_path}", f"+++ b/{patch.file_path}"]
    delta = 0

    for hunk in sorted(patch.hunks, key=lambda h: h.start_line):
        if not hunk.old_lines and not hunk.new_lines:
            continue

        before = hunk.context_before[-(hunk.start_line - 1):] if hunk.start_line > 1 else []
        after = list(hunk.context_after)
        old_count = len(before) + len(hunk.old_lines) + len(after)
        new_count = len(before) + len(hunk.new_lines) + len(after)

        old_start = hunk.start_line - len(before)
        new_start = old_start + delta
        if old_count == 0:
            old_start = hunk.start_line - 1
        if new_count == 0:
            new_start = hunk.start_line - 1 + delta

        out.append(f"@@ -{old_start},{old_count} +{new_start},{new_count} @@")
        out.extend(f" {line}" for line in before)
        out.extend(f"-{line}" for line in hunk.old_lines)
        out.extend(f"+{line}" for line in hunk.new_lines)
        out.extend(f" {line}" for line in after)
        delta += hunk.line_delta

    return "\n".join(out) + "\n"


def _strip_path_prefix(raw: str) -> str:
    path = raw.split("\t", 1)[0].strip()
    if path.startswith("a/") or path.startswith("b/"):
        path = path[2:]
    return path


def _build_hunk(old_start: int, old_count: int, body: list[str]) -> Hunk | None:
    """Turn the body lines of one @@ section into a Hunk.

    Leading and trailing context become context_before/context_after.
    Context lines between the first and last change belong to both sides.
    """
    change_idx = [i for i, line in enumerate(body) if line[:1] in ("-", "+")]
    if not change_idx:
        return None
    first, last = change_idx[0], change_idx[-1]

    context_before = [line[1:] for line in body[:first]]
    context_after = [line[1:] for line in body[last + 1:]]
    old_lines: list[str] = []
    new_lines: list[str] = []
    for line in body[first:last + 1]:
        marker, text = line[:1], line[1:]
        if marker in ("-", " "):
            old_lines.append(text)
        if marker in ("+", " "):
            new_lines.append(text)

    if old_count == 0:
        start_line = old_start + 1
    else:
        start_line = old_start + len(context_before)

    return Hunk(
        start_line=start_line,
        end_line=start_line + len(old_lines) - 1,
        old_lines=old_lines,
        new_lines=new_lines,
        context_before=context_before,
        context_after=context_after,
    )


def parse_unified_diff(diff_text: str) -> list[Patch]:
    """Parse unified-diff text into one Patch per file section.

    Hunk extents are taken from the @@ header counts, so lines that happen
    to start with "---" inside a hunk body are not mistaken for headers.

    Raises:
        ValueError: If a hunk header is malformed or a hunk body is truncated.
    """
    lines = diff_text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()

    patches: list[Patch] = []
    current_path: str | None = None
    current_hunks: list[Hunk] = []
    i = 0

    def flush() -> None:
        if current_path is not None:
            patches.append(Patch(file_path=current_path, hunks=list(current_hunks)))

    while i < len(lines):
        line = lines[i]
        if line.startswith("--- ") and i + 1 < len(lines) and lines[i + 1].startswith("+++ "):
            flush()
            old_path = _strip_path_prefix(line[4:])
            new_path = _strip_path_prefix(lines[i + 1][4:])
            current_path = old_path if new_path == "/dev/null" else new_path
            current_hunks = []
            i += 2
            continue

        if line.startswith("@@"):
            if current_path is None:
                raise ValueError(f"Hunk header before file header at line {i + 1}")
            match = HUNK_HEADER_RE.match(line)
            if not match:
                raise ValueError(f"Malformed hunk header at line {i + 1}: {line!r}")
            old_start = int(match.group(1))
            old_count = int(match.group(2)) if match.group(2) is not None else 1
            new_count = int(match.group(4)) if match.group(4) is not None else 1

            body: list[str] = []
            old_seen = new_seen = 0
            i += 1
            while old_seen < old_count or new_seen < new_count:
                if i >= len(lines):
                    raise ValueError(f"Truncated hunk in {current_path}")
                body_line = lines[i]
                i += 1
                if body_line.startswith("\\"):
                    continue
                marker = body_line[:1]
                if body_line == "":
                    # Some tools drop the leading space on empty context lines
                    body_line, marker = " ", " "
                if marker == " ":
                    old_seen += 1
                    new_seen += 1
                elif marker == "-":
                    old_seen += 1
                elif marker == "+":
                    new_seen += 1
                else:
                    raise ValueError(
                        f"Unexpected line in hunk for {current_path}: {body_line!r}"
                    )
                body.append(body_line)

            while i < len(lines) and lines[i].startswith(NO_NEWLINE_MARKER[:2]):
                i += 1

            hunk = _build_hunk(old_start, old_count, body)
            if hunk is not None:
                current_hunks.append(hunk)
            continue

        # Preamble such as "diff --git" or "index" lines
        i += 1

    flush()
    return patches


def from_unified_diff(diff_text: str, description: str = "") -> Patch:
    """Parse unified-diff text describing exactly one file.

    Raises:
        ValueError: If the text holds no file section or more than one.
    """
    patches = parse_unified_diff(diff_text)
    if len(patches) != 1:
        raise ValueError(
            f"Expected a diff for exactly one file, found {len(patches)}"
        )
    patch = patches[0]
    if description:
        patch = patch.model_copy(update={"description": description})
    return patch


def detect_code_style(source_code: str) -> dict[str, str]:
    """Detect code style conventions from source code.

    Args:
        source_code: The source code to analyse.

    Returns:
        Dict with keys:
            "indent": e.g. "2 spaces", "4 spaces", "tabs"
            "quotes": "single" or "double"
            "semicolons": "always" or "never"
    """
    indent_style = "4 spaces"
    quote_style = "double"
    semicolon_style = "always"

    if not source_code:
        return {"indent": indent_style, "quotes": quote_style, "semicolons": semicolon_style}

    indent_counts: dict[int, int] = {}
    lines = source_code.splitlines()

    for line in lines:
        if not line or not line[0].isspace():
            continue

        spaces = 0
        for char in line:
            if char == " ":
                spaces += 1
            elif char == "\t":
                indent_style = "tabs"
                break
            else:
                break

        if indent_style == "tabs":
            break

        if spaces > 0:
            indent_counts[spaces] = indent_counts.get(spaces, 0) + 1

    if indent_style != "tabs" and indent_counts:
        # Smallest indent level is the base unit
        base_indent = min(indent_counts.keys())
        indent_style = f"{base_indent} spaces"

    single_quote_count = source_code.count("'")
    double_quote_count = source_code.count('"')
    if single_quote_count > double_quote_count:
        quote_style = "single"

    # Only statement-like lines count; block openers and closers are neutral
    with_semi = without_semi = 0
    for line in lines:
        stripped = line.strip()
        if not stripped or stripped.startswith(("//", "/*", "*")):
            continue
        if stripped.endswith(("{", "}", ",", "(", "[", ">")):
            continue
        if stripped.endswith(";"):
            with_semi += 1
        else:
            without_semi += 1
    if without_semi > with_semi:
        semicolon_style = "never"

    return {"indent": indent_style, "quotes": quote_style, "semicolons": semicolon_style}
