"""Append-only styled log buffer and the sink that writes process output into it."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from rich.style import Style
from rich.text import Text

from buildwatch.ansi import StyledRun

logger = logging.getLogger(__name__)

BufferListener = Callable[["LogBuffer", int], None]

_CR_BEFORE_LF_RE = re.compile(r"\r+\n")


@dataclass(frozen=True)
class Restriction:
    """A narrowed view window `[start, end)` over a buffer."""

    start: int
    end: int

    def clamp(self, length: int) -> "Restriction":
        start = max(0, min(self.start, length))
        return Restriction(start=start, end=max(start, min(self.end, length)))


class LogBuffer:
    """
    Ordered sequence of styled runs holding one session's accumulated output.

    `point` is the caller's cursor (an offset into the full text) and `restriction` an optional
    narrowed view. Both are owned by whoever displays the buffer; the sink only saves and
    restores them around an append.
    """

    def __init__(self, name: str = "") -> None:
        self.name = name
        self._runs: list[StyledRun] = []
        self._length = 0
        self._text_cache: str | None = ""
        self.point = 0
        self.restriction: Restriction | None = None
        self.pending_carriage_return = False
        self.lock = threading.RLock()

    def __len__(self) -> int:
        return self._length

    @property
    def runs(self) -> tuple[StyledRun, ...]:
        return tuple(self._runs)

    @property
    def text(self) -> str:
        """Full text, ignoring any restriction."""
        if self._text_cache is None:
            self._text_cache = "".join(run.text for run in self._runs)
        return self._text_cache

    def visible_text(self) -> str:
        if self.restriction is None:
            return self.text
        r = self.restriction.clamp(self._length)
        return self.text[r.start : r.end]

    def narrow(self, start: int, end: int) -> None:
        if start > end:
            start, end = end, start
        self.restriction = Restriction(start, end).clamp(self._length)

    def widen(self) -> None:
        self.restriction = None

    def clear(self) -> None:
        with self.lock:
            self._runs = []
            self._length = 0
            self._text_cache = ""
            self.point = 0
            self.restriction = None
            self.pending_carriage_return = False

    def insert_at_end(self, text: str, style: Style) -> None:
        if not text:
            return
        if self._runs and self._runs[-1].style == style:
            self._runs[-1] = StyledRun(self._runs[-1].text + text, style)
        else:
            self._runs.append(StyledRun(text, style))
        self._length += len(text)
        self._text_cache = None

    def truncate(self, length: int) -> None:
        """Drop everything after `length` characters."""
        if length >= self._length:
            return
        length = max(0, length)
        kept: list[StyledRun] = []
        remaining = length
        for run in self._runs:
            if remaining <= 0:
                break
            if len(run.text) <= remaining:
                kept.append(run)
                remaining -= len(run.text)
            else:
                kept.append(StyledRun(run.text[:remaining], run.style))
                remaining = 0
        self._runs = kept
        self._length = length
        self._text_cache = None

    def line_start(self) -> int:
        """Offset of the first character of the last (current) line."""
        offset = self._length
        for run in reversed(self._runs):
            offset -= len(run.text)
            index = run.text.rfind("\n")
            if index >= 0:
                return offset + index + 1
        return 0

    def render(self, start: int = 0, end: int | None = None) -> Text:
        """Render `[start, end)` of the full text as a `rich` Text."""
        stop = self._length if end is None else min(end, self._length)
        out = Text()
        offset = 0
        for run in self._runs:
            run_end = offset + len(run.text)
            if run_end > start and offset < stop:
                out.append(run.text[max(0, start - offset) : stop - offset], style=run.style)
            offset = run_end
            if offset >= stop:
                break
        return out


class OutputSink:
    """
    Writes decoded runs at the end of a `LogBuffer`.

    Each append widens the buffer, inserts, then restores the caller's point and restriction
    from saved offsets. A point sitting at the end of the buffer follows the output; any other
    point stays put. Listeners are notified after every append with the offset from which the
    buffer content changed.
    """

    def __init__(self, *, collapse_carriage_returns: bool = True) -> None:
        self.collapse_carriage_returns = collapse_carriage_returns
        self._listeners: list[BufferListener] = []

    def subscribe(self, listener: BufferListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def reset(self, buffer: LogBuffer) -> None:
        buffer.clear()
        self._notify(buffer, 0)

    def append(self, buffer: LogBuffer, runs: Iterable[StyledRun]) -> int:
        """Append `runs` and return the offset from which the buffer changed."""
        with buffer.lock:
            saved_point = buffer.point
            saved_restriction = buffer.restriction
            following = saved_point >= len(buffer)
            original_length = changed_from = len(buffer)

            buffer.widen()
            try:
                for run in runs:
                    if self.collapse_carriage_returns:
                        changed_from = min(changed_from, self._insert_collapsing(buffer, run))
                    else:
                        buffer.insert_at_end(run.text, run.style)
            finally:
                length = len(buffer)
                buffer.restriction = self._restore_restriction(saved_restriction, original_length, length)
                buffer.point = length if following else min(saved_point, length)

        self._notify(buffer, changed_from)
        return changed_from

    @staticmethod
    def _restore_restriction(saved: Restriction | None, original_length: int, length: int) -> Restriction | None:
        if saved is None:
            return None
        if saved.end >= original_length:
            # A window reaching the old end grows with the output instead of hiding it.
            return Restriction(saved.start, length).clamp(length)
        return saved.clamp(length)

    def finish(self, buffer: LogBuffer) -> None:
        """Settle a trailing carriage return at end of output and notify listeners."""
        with buffer.lock:
            buffer.pending_carriage_return = False
        self._notify(buffer, len(buffer))

    def _insert_collapsing(self, buffer: LogBuffer, run: StyledRun) -> int:
        changed_from = len(buffer)
        text = run.text
        if buffer.pending_carriage_return:
            text = text.lstrip("\r")
            if not text:
                return changed_from
            buffer.pending_carriage_return = False
            if not text.startswith("\n"):
                changed_from = min(changed_from, self._collapse_line(buffer))

        # Any run of CRs ending a line is a line ending, not an overwrite.
        text = _CR_BEFORE_LF_RE.sub("\n", text)
        if text.endswith("\r"):
            # Held until the next append shows whether a line feed follows.
            buffer.pending_carriage_return = True
            text = text.rstrip("\r")

        for index, segment in enumerate(text.split("\r")):
            if index > 0:
                changed_from = min(changed_from, self._collapse_line(buffer))
            buffer.insert_at_end(segment, run.style)
        return changed_from

    @staticmethod
    def _collapse_line(buffer: LogBuffer) -> int:
        start = buffer.line_start()
        buffer.truncate(start)
        return start

    def _notify(self, buffer: LogBuffer, changed_from: int) -> None:
        for listener in list(self._listeners):
            try:
                listener(buffer, changed_from)
            except Exception:
                logger.exception("Buffer listener failed for %s", buffer.name or "buffer")
