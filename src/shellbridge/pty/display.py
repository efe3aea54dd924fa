"""Display buffer: coalesces a session's output while an exec is in flight."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable

from shellbridge.output import DEFAULT_SENTINEL_PREFIX, strip_sentinels

logger = logging.getLogger(__name__)


class DisplayBuffer:
    """Holds back raw chunks so a sentinel split across chunks is never shown.

    While open, every chunk is appended to ``pending`` and a short debounce
    timer is restarted. When the timer fires the accumulated text is
    sentinel-stripped and handed to ``sink`` in one piece. ``close()``
    schedules a final flush after a grace delay; chunks that arrive in the
    meantime still queue here so ordering with the forwarded stream holds.

    All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        sink: Callable[[str], None],
        debounce: float = 0.008,
        flush_grace: float = 0.015,
        sentinel_prefix: str = DEFAULT_SENTINEL_PREFIX,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._sink = sink
        self.debounce = debounce
        self.flush_grace = flush_grace
        self.sentinel_prefix = sentinel_prefix
        self._loop = loop or asyncio.get_running_loop()
        self.pending = ""
        self._timer: asyncio.TimerHandle | None = None
        self._grace_timer: asyncio.TimerHandle | None = None
        self._on_closed: Callable[[], None] | None = None
        self.closing = False
        self.closed = False
        # Trailing text that might be the start of a sentinel
        self._partial = re.compile(
            re.escape(sentinel_prefix) + r"[a-z0-9_]*-?\d*$"
        )

    def push(self, data: str) -> None:
        """Queue a raw chunk and restart the debounce timer."""
        if self.closed:
            self._sink(data)
            return
        self.pending += data
        if self.closing:
            return
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self._loop.call_later(self.debounce, self.flush)

    def flush(self, final: bool = False) -> None:
        """Clean and forward what has accumulated.

        Unless ``final``, a trailing fragment that could still grow into a
        sentinel line is held back for the next flush.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not self.pending:
            return
        text, held = self.pending, ""
        if not final:
            text, held = self._split_partial(text)
        self.pending = held
        cleaned = strip_sentinels(text, self.sentinel_prefix)
        if cleaned:
            try:
                self._sink(cleaned)
            except Exception:
                logger.exception("Display sink failed")

    def _split_partial(self, text: str) -> tuple[str, str]:
        match = self._partial.search(text)
        if match:
            return text[: match.start()], text[match.start() :]
        prefix = self.sentinel_prefix
        # Longest suffix of text that is a proper prefix of the sentinel prefix
        for n in range(min(len(prefix) - 1, len(text)), 0, -1):
            if text.endswith(prefix[:n]):
                return text[:-n], text[-n:]
        return text, ""

    def close(self, on_closed: Callable[[], None] | None = None) -> None:
        """Schedule the final flush after the grace delay."""
        if self.closed:
            return
        self.closing = True
        self._on_closed = on_closed
        if self._grace_timer is not None:
            self._grace_timer.cancel()
        self._grace_timer = self._loop.call_later(self.flush_grace, self._finish)

    def reopen(self) -> None:
        """Cancel a scheduled close; a new exec started before the grace ran out."""
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None
        self._on_closed = None
        self.closing = False
        self.closed = False
        if self.pending and self._timer is None:
            self._timer = self._loop.call_later(self.debounce, self.flush)

    def _finish(self) -> None:
        self._grace_timer = None
        self.discard(flush=True)
        callback, self._on_closed = self._on_closed, None
        if callback is not None:
            callback()

    def discard(self, flush: bool = True) -> None:
        """Cancel all timers, optionally flushing what is left first."""
        if self._grace_timer is not None:
            self._grace_timer.cancel()
            self._grace_timer = None
        if flush:
            self.flush(final=True)
        elif self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.pending = ""
        self.closing = False
        self.closed = True
