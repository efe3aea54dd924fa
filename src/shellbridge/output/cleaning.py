"""Output cleaning: ANSI, carriage-return, sentinel and control-byte stripping.

Three consumers share these primitives:

* the sentinel exec protocol (``clean_captured``) which turns the raw
  accumulated PTY stream into the stdout handed back to the agent,
* the display buffer (``strip_sentinels``) which hides injected wrapper
  text from the human while keeping colours intact,
* history readers (``clean_history``) used by ``readHistory``.
"""

from __future__ import annotations

import functools
import re

DEFAULT_SENTINEL_PREFIX = "__SHB_DONE_"
TRUNCATION_MARKER = "\n...(truncated)...\n"

# CSI, two-byte and other simple escapes
_ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
# OSC terminated by BEL or ST (window titles, hyperlinks, cwd reporting)
_OSC_ESCAPE = re.compile(r"\x1B\][^\x07\x1B]*(?:\x07|\x1B\\)")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

# Colour codes a syntax-highlighting shell may splice into the echoed wrapper
_A = r"(?:\x1B\[[0-9;]*[a-zA-Z])*"


def strip_ansi(text: str) -> str:
    """Strip ANSI escape sequences (OSC first, then CSI and simple escapes)."""
    text = _OSC_ESCAPE.sub("", text)
    return _ANSI_ESCAPE.sub("", text)


def strip_control_chars(text: str) -> str:
    """Remove non-printable control bytes, keeping tab, newline and CR."""
    return _CONTROL_CHARS.sub("", text)


def collapse_carriage_returns(text: str) -> str:
    """Resolve carriage-return overwrites.

    ``\\r\\n`` is a plain line ending. Any other ``\\r`` inside a line means
    the text after it overwrote what came before (progress bars, spinners),
    so only the segment after the last one is kept.
    """
    lines = text.replace("\r\n", "\n").split("\n")
    out = []
    for line in lines:
        line = line.rstrip("\r")
        if "\r" in line:
            line = line.rsplit("\r", 1)[1]
        out.append(line)
    return "\n".join(out)


def truncate_middle(
    text: str,
    max_chars: int = 8000,
    keep_head: int = 4000,
    keep_tail: int = 4000,
) -> str:
    """Keep the head and tail of oversized output, joined by a marker."""
    if len(text) <= max_chars:
        return text
    return text[:keep_head] + TRUNCATION_MARKER + text[-keep_tail:]


@functools.lru_cache(maxsize=8)
def _display_patterns(prefix: str) -> tuple[re.Pattern[str], ...]:
    p = re.escape(prefix)
    return (
        # POSIX wrapper echo: "; printf '\n<sentinel>%d\n' $?"
        re.compile(
            rf";{_A}\s*{_A}printf{_A}\s+{_A}[\"']?{_A}\\n{_A}{p}[a-z0-9]+__(?:%d|-?\d+)"
            rf"{_A}\\n{_A}[\"']?{_A}\s*{_A}\$\?{_A}"
        ),
        re.compile(
            rf"printf{_A}\s+{_A}[\"']?{_A}\\n{_A}{p}[a-z0-9]+__(?:%d|-?\d+)"
            rf"{_A}\\n{_A}[\"']?{_A}\s*{_A}\$\?{_A}"
        ),
        # PowerShell wrapper echo
        re.compile(rf"; Write-Host [\"']{p}[^\"']*\$LASTEXITCODE[\"']"),
        re.compile(rf"Write-Host [\"']{p}[^\"']*\$LASTEXITCODE[\"']"),
        # cmd.exe wrapper echo
        re.compile(rf" ?& echo\. & call echo {p}[a-z0-9]+__%\^errorlevel%"),
        # Sentinel line itself; keep the trailing newline so the prompt
        # still starts on its own line.
        re.compile(rf"\r?\n?{p}[a-z0-9]+__(?:-?\d+|%d)"),
    )


@functools.lru_cache(maxsize=8)
def _residual_patterns(prefix: str) -> tuple[re.Pattern[str], ...]:
    p = re.escape(prefix)
    return (
        re.compile(rf"; printf '\\n{p}[^']*' \$\?"),
        re.compile(rf"printf\s+'\\n{p}[^']*'\s*\$\?"),
        re.compile(r"; printf [^\n]*$", re.MULTILINE),
        re.compile(rf"; Write-Host [\"']{p}[^\"']*\$LASTEXITCODE[\"']"),
        re.compile(rf"Write-Host\s+[\"']{p}[^\"']*\$LASTEXITCODE[\"']"),
        re.compile(r"; Write-Host [^\n]*$", re.MULTILINE),
        re.compile(rf" ?& echo\. & call echo {p}[a-z0-9]+__%\^errorlevel%"),
        re.compile(rf"{p}[a-z0-9]+__(?:-?\d+|%d)?"),
    )


def strip_sentinels(text: str, prefix: str = DEFAULT_SENTINEL_PREFIX) -> str:
    """Remove wrapper echoes and sentinel lines, leaving other ANSI intact.

    Used on text that is about to be painted by a terminal emulator, so
    colour codes outside the wrapper are preserved.
    """
    for pattern in _display_patterns(prefix):
        text = pattern.sub("", text)
    return text


def strip_sentinel_residue(text: str, prefix: str = DEFAULT_SENTINEL_PREFIX) -> str:
    """Remove wrapper fragments from already ANSI-stripped text."""
    for pattern in _residual_patterns(prefix):
        text = pattern.sub("", text)
    return text


def completion_pattern(sentinel: str, terminated: bool = True) -> re.Pattern[str]:
    """Regex for ``<sentinel><exit code>``.

    With ``terminated`` the code must be followed by a non-digit so an exit
    status split across two chunks (``1`` then ``27``) is never read early.
    """
    tail = r"(?=\D)" if terminated else r"$"
    return re.compile(re.escape(sentinel) + r"(-?\d+)" + tail)


def clean_captured(
    output: str,
    sentinel: str,
    prefix: str = DEFAULT_SENTINEL_PREFIX,
    max_chars: int = 8000,
    keep_head: int = 4000,
    keep_tail: int = 4000,
) -> str:
    """Turn the raw stream captured during an exec into clean stdout."""
    captured = collapse_carriage_returns(strip_ansi(output))

    match = re.search(re.escape(sentinel) + r"-?\d+", captured)
    if match:
        captured = captured[: match.start()]

    # The first line is the shell echoing the wrapped command back.
    first_newline = captured.find("\n")
    if first_newline >= 0:
        captured = captured[first_newline + 1 :]

    captured = strip_sentinel_residue(captured, prefix)
    captured = strip_control_chars(captured).strip()
    return truncate_middle(captured, max_chars, keep_head, keep_tail)


def clean_history(
    raw: str,
    lines: int | None = None,
    prefix: str = DEFAULT_SENTINEL_PREFIX,
) -> str:
    """Readable view of a session's raw history for an agent or log.

    Blank lines are dropped and only the last ``lines`` lines are kept.
    """
    if not raw:
        return "(No terminal output yet)"
    clean = collapse_carriage_returns(strip_ansi(raw))
    clean = strip_sentinel_residue(clean, prefix)
    clean = strip_control_chars(clean)
    kept = [line for line in clean.split("\n") if line.strip()]
    if lines is not None:
        kept = kept[-lines:] if lines > 0 else []
    return "\n".join(kept) or "(No output)"
