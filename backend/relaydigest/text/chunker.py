from __future__ import annotations
from typing import List

# a soft break is only taken if the chunk keeps at least this share of max_size
MIN_FILL = 0.7

_BREAKS = ("\n\n", ". ")


def _find_cut(text: str, start: int, max_size: int) -> int:
    proposed = start + max_size
    if proposed >= len(text):
        return len(text)
    floor = start + int(max_size * MIN_FILL)
    for brk in _BREAKS:
        pos = text.rfind(brk, start, proposed)
        if pos == -1:
            continue
        cut = pos + len(brk)
        if cut >= floor:
            return cut
    return proposed


def chunk_text(text: str, max_size: int) -> List[str]:
    """
    Split `text` into pieces of at most `max_size` characters.

    Cuts prefer the last paragraph break, then the last sentence end, as long
    as the piece stays at least 70% full; otherwise the cut is exact. The
    break itself stays with the left-hand piece, so "".join(result) == text.
    """
    if max_size < 1:
        raise ValueError("max_size must be positive")
    if len(text) <= max_size:
        return [text]

    chunks: List[str] = []
    offset = 0
    while offset < len(text):
        cut = _find_cut(text, offset, max_size)
        chunks.append(text[offset:cut])
        offset = cut
    return chunks


def chunk_code_safe(text: str, max_size: int = 2000, headroom: int | None = None) -> List[str]:
    """
    Split text for stores that hold rich-text blocks of `max_size` characters
    and render each block as a fenced line sequence (diagram sources, code).

    Every piece but the last ends with a newline and every piece but the
    first starts with one, so no line is glued to its neighbour when blocks
    are re-joined by the consumer. Pieces that still exceed `max_size` after
    padding are sliced into fixed-size pieces.
    """
    if max_size < 2:
        raise ValueError("max_size must be at least 2")
    text = text.replace("\r\n", "\n")
    if headroom is None:
        headroom = max(2, max_size // 18)
    target = max(1, max_size - headroom)

    parts: List[str] = []
    i = 0
    while i < len(text):
        end = min(i + target, len(text))
        if end < len(text):
            cut = text.rfind("\n", i, end)
            if cut >= i + 10:
                end = cut + 1
        parts.append(text[i:end])
        i = end

    out: List[str] = []
    for k, part in enumerate(parts):
        if k < len(parts) - 1 and not part.endswith("\n"):
            part += "\n"
        if k > 0 and not part.startswith("\n"):
            part = "\n" + part
        if len(part) > max_size:
            out.extend(part[j:j + max_size] for j in range(0, len(part), max_size))
        else:
            out.append(part)
    return out
