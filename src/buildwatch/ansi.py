"""Incremental decoding of terminal escape sequences into styled text runs."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace

from rich.style import Style

logger = logging.getLogger(__name__)

COLOR_NAMES = ("black", "red", "green", "yellow", "blue", "magenta", "cyan", "white")

_ESC = 0x1B
_BEL = 0x07
# Longest escape sequence accepted before the decoder gives up and treats it as text.
_MAX_SEQUENCE_BYTES = 256

_INCOMPLETE = "incomplete"
_MALFORMED = "malformed"
_CSI = "csi"
_OTHER = "other"


@dataclass(frozen=True)
class StyleAttrs:
    foreground: int | None = None
    background: int | None = None
    bold: bool = False
    dim: bool = False
    italic: bool = False
    underline: bool = False
    reverse: bool = False


@dataclass(frozen=True)
class DecoderState:
    """Bytes not yet decoded (partial escape or partial UTF-8 character) plus the active style."""

    pending: bytes = b""
    attrs: StyleAttrs = field(default_factory=StyleAttrs)


@dataclass(frozen=True)
class StyledRun:
    text: str
    style: Style


def _coerce_style(value: Style | str | None) -> Style | None:
    if value is None or isinstance(value, Style):
        return value
    text = str(value).strip()
    return Style.parse(text) if text else None


class Palette:
    """
    Maps the 8 standard terminal color indices (plus bright variants) to display styles.

    Entries may be `rich` styles, style strings (`"bold red"`, `"#ff8700"`) or `None`.
    Indices with no entry fall back to `default`.
    """

    def __init__(
        self,
        colors: Sequence[Style | str | None] | None = None,
        *,
        bright: Sequence[Style | str | None] | None = None,
        default: Style | None = None,
    ) -> None:
        normal = list(colors) if colors is not None else list(COLOR_NAMES)
        bright_list = list(bright) if bright is not None else [f"bright_{name}" for name in COLOR_NAMES]
        if len(normal) != 8 or len(bright_list) != 8:
            raise ValueError("A palette needs exactly 8 colors and 8 bright colors")
        self.default = default if default is not None else Style.null()
        self._styles: tuple[Style | None, ...] = tuple(_coerce_style(v) for v in [*normal, *bright_list])

    def foreground(self, index: int | None) -> Style:
        if index is None or not 0 <= index < len(self._styles):
            return self.default
        style = self._styles[index]
        return style if style is not None else self.default

    def background(self, index: int | None) -> Style:
        color = self.foreground(index).color
        if color is None:
            return Style.null()
        return Style(bgcolor=color)


def _incomplete_utf8_tail(data: bytes, start: int) -> int:
    """Number of trailing bytes in `data[start:]` forming an unfinished UTF-8 character."""
    n = len(data)
    for k in range(1, min(4, n - start + 1)):
        b = data[n - k]
        if b & 0xC0 == 0x80:
            continue
        if b >= 0xC0:
            needed = 2 if b < 0xE0 else 3 if b < 0xF0 else 4
            return k if needed > k else 0
        return 0
    return 0


def _scan_sequence(data: bytes, start: int) -> tuple[str, int]:
    """Classify the escape sequence beginning at `data[start]` and return (kind, end)."""
    n = len(data)
    limit = min(n, start + _MAX_SEQUENCE_BYTES)
    overflow = _MALFORMED if limit < n else _INCOMPLETE
    if start + 1 >= n:
        return _INCOMPLETE, n

    intro = data[start + 1]
    if intro == 0x5B:  # CSI
        j = start + 2
        while j < limit:
            b = data[j]
            if 0x20 <= b <= 0x3F:
                j += 1
                continue
            if 0x40 <= b <= 0x7E:
                return _CSI, j + 1
            return _MALFORMED, j
        return overflow, n

    if intro == 0x5D:  # OSC, terminated by BEL or ST
        j = start + 2
        while j < limit:
            b = data[j]
            if b == _BEL:
                return _OTHER, j + 1
            if b == _ESC:
                if j + 1 >= n:
                    return _INCOMPLETE, n
                if data[j + 1] == 0x5C:
                    return _OTHER, j + 2
                return _MALFORMED, j
            j += 1
        return overflow, n

    if 0x20 <= intro <= 0x2F:  # charset designation and friends
        j = start + 2
        while j < limit:
            b = data[j]
            if 0x20 <= b <= 0x2F:
                j += 1
                continue
            if 0x30 <= b <= 0x7E:
                return _OTHER, j + 1
            return _MALFORMED, j
        return overflow, n

    if 0x30 <= intro <= 0x7E:
        return _OTHER, start + 2
    return _MALFORMED, start + 1


def _sgr_values(params: bytes) -> list[int]:
    values: list[int] = []
    for part in params.decode("ascii", "replace").replace(":", ";").split(";"):
        values.append(int(part) if part.isdigit() else 0)
    return values


def _extended_color(values: list[int], index: int) -> tuple[int | None, int]:
    """Parse `5;n` or `2;r;g;b` after a 38/48 code; returns (palette index, values consumed)."""
    if index >= len(values):
        return None, 0
    mode = values[index]
    if mode == 5 and index + 1 < len(values):
        n = values[index + 1]
        return (n if n < 16 else None), 2
    if mode == 2:
        return None, min(4, len(values) - index)
    return None, 1


def _apply_sgr(attrs: StyleAttrs, params: bytes) -> StyleAttrs:
    values = _sgr_values(params)
    i = 0
    while i < len(values):
        code = values[i]
        if code == 0:
            attrs = StyleAttrs()
        elif code == 1:
            attrs = replace(attrs, bold=True)
        elif code == 2:
            attrs = replace(attrs, dim=True)
        elif code == 3:
            attrs = replace(attrs, italic=True)
        elif code == 4:
            attrs = replace(attrs, underline=True)
        elif code == 7:
            attrs = replace(attrs, reverse=True)
        elif code == 22:
            attrs = replace(attrs, bold=False, dim=False)
        elif code == 23:
            attrs = replace(attrs, italic=False)
        elif code == 24:
            attrs = replace(attrs, underline=False)
        elif code == 27:
            attrs = replace(attrs, reverse=False)
        elif 30 <= code <= 37:
            attrs = replace(attrs, foreground=code - 30)
        elif 90 <= code <= 97:
            attrs = replace(attrs, foreground=code - 90 + 8)
        elif code == 39:
            attrs = replace(attrs, foreground=None)
        elif 40 <= code <= 47:
            attrs = replace(attrs, background=code - 40)
        elif 100 <= code <= 107:
            attrs = replace(attrs, background=code - 100 + 8)
        elif code == 49:
            attrs = replace(attrs, background=None)
        elif code in (38, 48):
            color, consumed = _extended_color(values, i + 1)
            i += consumed
            if code == 38:
                attrs = replace(attrs, foreground=color)
            else:
                attrs = replace(attrs, background=color)
        i += 1
    return attrs


def _push(runs: list[StyledRun], text: str, style: Style) -> None:
    if not text:
        return
    if runs and runs[-1].style == style:
        runs[-1] = StyledRun(runs[-1].text + text, style)
    else:
        runs.append(StyledRun(text, style))


def coalesce(runs: Iterable[StyledRun]) -> list[StyledRun]:
    """Merge adjacent runs sharing a style and drop empty ones."""
    merged: list[StyledRun] = []
    for run in runs:
        _push(merged, run.text, run.style)
    return merged


class AnsiDecoder:
    """
    Turns raw process output into styled runs.

    The decoder itself is stateless; all parse state travels in the `DecoderState` value
    threaded through successive `decode` calls, so an escape sequence or a multi-byte
    character split across two chunks decodes exactly as if it had arrived whole.
    """

    def __init__(self, palette: Palette | None = None) -> None:
        self.palette = palette or Palette()
        self._styles: dict[StyleAttrs, Style] = {}

    def initial_state(self) -> DecoderState:
        return DecoderState()

    def style_for(self, attrs: StyleAttrs) -> Style:
        cached = self._styles.get(attrs)
        if cached is not None:
            return cached
        parts = [self.palette.default]
        if attrs.foreground is not None:
            parts.append(self.palette.foreground(attrs.foreground))
        if attrs.background is not None:
            parts.append(self.palette.background(attrs.background))
        if attrs.bold or attrs.dim or attrs.italic or attrs.underline or attrs.reverse:
            parts.append(
                Style(
                    bold=attrs.bold or None,
                    dim=attrs.dim or None,
                    italic=attrs.italic or None,
                    underline=attrs.underline or None,
                    reverse=attrs.reverse or None,
                )
            )
        style = Style.combine(parts)
        self._styles[attrs] = style
        return style

    def decode(self, state: DecoderState, chunk: bytes | str) -> tuple[list[StyledRun], DecoderState]:
        if isinstance(chunk, str):
            chunk = chunk.encode("utf-8")
        data = state.pending + bytes(chunk)
        attrs = state.attrs
        runs: list[StyledRun] = []
        n = len(data)
        i = 0
        while i < n:
            esc = data.find(b"\x1b", i)
            if esc < 0:
                end = n - _incomplete_utf8_tail(data, i)
                _push(runs, data[i:end].decode("utf-8", "replace"), self.style_for(attrs))
                return runs, DecoderState(pending=data[end:], attrs=attrs)

            if esc > i:
                _push(runs, data[i:esc].decode("utf-8", "replace"), self.style_for(attrs))

            kind, end = _scan_sequence(data, esc)
            if kind == _INCOMPLETE:
                return runs, DecoderState(pending=data[esc:], attrs=attrs)
            if kind == _MALFORMED:
                logger.debug("Malformed escape sequence at offset %d; decoding as text", esc)
                i = esc + 1
                continue

            sequence = data[esc:end]
            if kind == _CSI and sequence.endswith(b"m") and sequence[2:3] not in (b"<", b"=", b">", b"?"):
                attrs = _apply_sgr(attrs, sequence[2:-1])
            else:
                attrs = StyleAttrs()
            i = end

        return runs, DecoderState(pending=b"", attrs=attrs)

    def flush(self, state: DecoderState) -> tuple[list[StyledRun], DecoderState]:
        """Emit any bytes still held in `state` as plain text."""
        runs: list[StyledRun] = []
        if state.pending:
            text = state.pending.replace(b"\x1b", b"").decode("utf-8", "replace")
            _push(runs, text, self.style_for(state.attrs))
        return runs, DecoderState(pending=b"", attrs=state.attrs)

    def decode_all(self, data: bytes | str) -> list[StyledRun]:
        runs, state = self.decode(self.initial_state(), data)
        tail, _ = self.flush(state)
        return coalesce([*runs, *tail])
