"""Utilities for patchloop."""

from patchloop.utils.diff_generator import (
    detect_code_style,
    from_unified_diff,
    generate_unified_diff,
    parse_unified_diff,
    to_unified_diff,
)

__all__ = [
    "detect_code_style",
    "from_unified_diff",
    "generate_unified_diff",
    "parse_unified_diff",
    "to_unified_diff",
]
