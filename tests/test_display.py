"""Tests for shellbridge.pty.display.DisplayBuffer."""

from __future__ import annotations

import asyncio

import pytest

from shellbridge.pty.display import DisplayBuffer

SENTINEL = "__SHB_DONE_abc12345__"


def _buffer(shown: list[str], **kwargs: float) -> DisplayBuffer:
    kwargs.setdefault("debounce", 0.005)
    kwargs.setdefault("flush_grace", 0.01)
    return DisplayBuffer(shown.append, **kwargs)


class TestDebounce:
    @pytest.mark.asyncio
    async def test_chunks_coalesced(self) -> None:
        shown: list[str] = []
        buf = _buffer(shown)
        buf.push("a")
        buf.push("b")
        buf.push("c")
        assert shown == []
        await asyncio.sleep(0.03)
        assert shown == ["abc"]

    @pytest.mark.asyncio
    async def test_sentinel_line_hidden(self) -> None:
        shown: list[str] = []
        buf = _buffer(shown)
        buf.push(f"out\r\n{SENTINEL}0\r\n$ ")
        await asyncio.sleep(0.03)
        assert "".join(shown) == "out\r\n$ "

    @pytest.mark.asyncio
    async def test_split_sentinel_never_shown(self) -> None:
        text = f"out\r\n{SENTINEL}0\r\n$ "
        for cut in range(1, len(text)):
            shown: list[str] = []
            buf = _buffer(shown)
            buf.push(text[:cut])
            await asyncio.sleep(0.02)  # debounce fires between the halves
            buf.push(text[cut:])
            await asyncio.sleep(0.02)
            joined = "".join(shown)
            assert "__SHB" not in joined, f"cut at {cut}: {joined!r}"
            assert joined.startswith("out")
            assert joined.endswith("$ ")
            buf.discard()

    def test_partial_prefix_held_back(self) -> None:
        shown: list[str] = []
        loop = asyncio.new_event_loop()
        try:
            buf = DisplayBuffer(shown.append, loop=loop)
            buf.push("hello __SH")
            buf.flush()
            assert shown == ["hello "]
            assert buf.pending == "__SH"
            buf.flush(final=True)
            assert shown == ["hello ", "__SH"]
        finally:
            loop.close()


class TestClose:
    @pytest.mark.asyncio
    async def test_close_flushes_after_grace(self) -> None:
        shown: list[str] = []
        closed: list[bool] = []
        buf = _buffer(shown, debounce=1.0)
        buf.push("tail")
        buf.close(on_closed=lambda: closed.append(True))
        assert buf.closing
        await asyncio.sleep(0.03)
        assert shown == ["tail"]
        assert closed == [True]
        assert buf.closed

    @pytest.mark.asyncio
    async def test_chunks_during_grace_stay_ordered(self) -> None:
        shown: list[str] = []
        buf = _buffer(shown, debounce=1.0)
        buf.push("one ")
        buf.close()
        buf.push("two")
        await asyncio.sleep(0.03)
        assert "".join(shown) == "one two"

    @pytest.mark.asyncio
    async def test_closed_passes_through(self) -> None:
        shown: list[str] = []
        buf = _buffer(shown)
        buf.close()
        await asyncio.sleep(0.03)
        buf.push("late")
        assert shown == ["late"]

    @pytest.mark.asyncio
    async def test_reopen_cancels_close(self) -> None:
        shown: list[str] = []
        closed: list[bool] = []
        buf = _buffer(shown)
        buf.close(on_closed=lambda: closed.append(True))
        buf.reopen()
        await asyncio.sleep(0.03)
        assert closed == []
        assert not buf.closing
        assert not buf.closed


class TestDiscard:
    @pytest.mark.asyncio
    async def test_discard_flushes(self) -> None:
        shown: list[str] = []
        buf = _buffer(shown, debounce=1.0)
        buf.push("left")
        buf.discard()
        assert shown == ["left"]
        assert buf.closed

    @pytest.mark.asyncio
    async def test_discard_without_flush(self) -> None:
        shown: list[str] = []
        buf = _buffer(shown, debounce=0.001)
        buf.push("dropped")
        buf.discard(flush=False)
        await asyncio.sleep(0.02)
        assert shown == []
