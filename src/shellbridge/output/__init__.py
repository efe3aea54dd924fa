"""Output cleaning for raw terminal streams."""

from shellbridge.output.cleaning import (
    DEFAULT_SENTINEL_PREFIX,
    TRUNCATION_MARKER,
    clean_captured,
    clean_history,
    collapse_carriage_returns,
    completion_pattern,
    strip_ansi,
    strip_control_chars,
    strip_sentinel_residue,
    strip_sentinels,
    truncate_middle,
)

__all__ = [
    "DEFAULT_SENTINEL_PREFIX",
    "TRUNCATION_MARKER",
    "clean_captured",
    "clean_history",
    "collapse_carriage_returns",
    "completion_pattern",
    "strip_ansi",
    "strip_control_chars",
    "strip_sentinel_residue",
    "strip_sentinels",
    "truncate_middle",
]
