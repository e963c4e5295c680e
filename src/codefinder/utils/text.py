"""Text helpers for line-based chunking."""

from __future__ import annotations

from typing import Iterator, NamedTuple


class TextSpan(NamedTuple):
    start: int
    end: int
    forced: bool = False  # a single line longer than the budget was cut mid-line


def split_lines(text: str, *, max_chars: int, offset: int = 0) -> Iterator[TextSpan]:
    """Greedily pack whole lines into spans of at most ``max_chars``.

    Spans are contiguous and cover ``text`` exactly, so joining the slices
    reconstructs the input. Breaks happen at line boundaries only, except
    for a line that alone exceeds the budget, which is cut into
    ``max_chars`` pieces and flagged as ``forced``.
    """
    if not text:
        return
    if max_chars < 1:
        raise ValueError("max_chars must be positive")

    start = 0
    cursor = 0
    mid_line = False
    for line in text.splitlines(keepends=True):
        line_end = cursor + len(line)
        if line_end - start <= max_chars:
            cursor = line_end
            continue
        if cursor > start:
            yield TextSpan(offset + start, offset + cursor, mid_line)
            start = cursor
            mid_line = False
        while line_end - start > max_chars:
            yield TextSpan(offset + start, offset + start + max_chars, True)
            start += max_chars
            mid_line = True
        cursor = line_end
    if cursor > start:
        yield TextSpan(offset + start, offset + cursor, mid_line)
