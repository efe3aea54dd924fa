"""Capped raw-output history for terminal sessions."""

from __future__ import annotations

import threading


class HistoryBuffer:
    """Thread-safe, character-capped history of a session's raw output.

    Raw text (ANSI included) is appended as it arrives. When an append
    would push the buffer past ``max_chars``, the buffer is replaced by its
    trailing ``keep_chars`` characters plus the new data, so the most
    recent output is never dropped and the buffer never grows unbounded.
    """

    def __init__(self, max_chars: int = 100_000, keep_chars: int = 80_000) -> None:
        if keep_chars > max_chars:
            raise ValueError("keep_chars must not exceed max_chars")
        self.max_chars = max_chars
        self.keep_chars = keep_chars
        self._text = ""
        self._total_chars = 0  # Total characters ever appended
        self._lock = threading.Lock()

    def append(self, data: str) -> None:
        """Append a raw output chunk."""
        if not data:
            return
        with self._lock:
            self._total_chars += len(data)
            if len(self._text) + len(data) > self.max_chars:
                self._text = self._text[-self.keep_chars :] + data
                # A single chunk larger than the cap keeps only its tail
                if len(self._text) > self.max_chars:
                    self._text = self._text[-self.max_chars :]
            else:
                self._text += data

    def text(self) -> str:
        """The whole retained history."""
        with self._lock:
            return self._text

    def tail_lines(self, n: int = 20) -> list[str]:
        """The last ``n`` raw lines (ANSI preserved)."""
        with self._lock:
            lines = self._text.split("\n")
        return lines[-n:] if len(lines) > n else lines

    def set(self, text: str) -> None:
        """Replace the history, e.g. when restoring a saved terminal."""
        with self._lock:
            self._text = text[-self.max_chars :] if len(text) > self.max_chars else text
            self._total_chars = len(self._text)

    def clear(self) -> None:
        """Clear the history."""
        with self._lock:
            self._text = ""
            self._total_chars = 0

    @property
    def total_chars(self) -> int:
        """Total number of characters ever appended."""
        with self._lock:
            return self._total_chars

    def __len__(self) -> int:
        with self._lock:
            return len(self._text)
