from unittest.mock import MagicMock

import pytest

from patchloop.models import Hunk, Patch


FOO_LINES = ["line1", "line2", "line3", "line4", "x", "y", "line7", "line8", "line9", "line10"]


@pytest.fixture
def foo_ts_content():
    """Ten-line foo.ts with a trailing newline; lines 5-6 are "x" and "y"."""
    return "\n".join(FOO_LINES) + "\n"


@pytest.fixture
def foo_ts_patch():
    return Patch(
        file_path="foo.ts",
        hunks=[Hunk(
            start_line=5,
            end_line=6,
            old_lines=["x", "y"],
            new_lines=["z"],
            context_before=["line2", "line3", "line4"],
            context_after=["line7", "line8", "line9"],
        )],
        description="Collapse x and y into z",
    )


@pytest.fixture
def export_pair_files():
    """a.ts exports foo and bar; b.ts imports foo from ./a."""
    return {
        "a.ts": "export function foo() {\n  return 1;\n}\n\nexport const bar = 2;\n",
        "b.ts": "import { foo } from './a';\n\nexport const value = foo();\n",
    }


@pytest.fixture
def mock_generator():
    """PatchGenerator double whose reviews report nothing."""
    generator = MagicMock()
    generator.review_goal_alignment.return_value = []
    generator.review_logic.return_value = []
    return generator
