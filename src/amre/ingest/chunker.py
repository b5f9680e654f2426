from __future__ import annotations

import re
from typing import List

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_BREAKS = ("\n", ". ", "? ", "! ", "; ", " ")


def chunk_text(text: str, chunk_size: int = 1200, overlap: int = 200) -> List[str]:
    """Pack whole paragraphs into chunks of at most *chunk_size* characters.

    Paragraphs longer than *chunk_size* are cut at the last sentence or
    word break inside a sliding window.  Consecutive chunks share up to
    *overlap* trailing characters of the previous chunk.
    """
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    overlap = max(0, min(overlap, chunk_size // 2))
    paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT.split(text or "") if p.strip()]
    if not paragraphs:
        return []

    chunks: List[str] = []
    current = ""
    for para in paragraphs:
        for piece in _split_long(para, chunk_size, overlap):
            joined = f"{current}\n\n{piece}" if current else piece
            if len(joined) <= chunk_size:
                current = joined
                continue
            chunks.append(current)
            tail = _tail(current, overlap)
            current = f"{tail}\n\n{piece}" if tail and len(tail) + len(piece) + 2 <= chunk_size else piece
    if current:
        chunks.append(current)
    return chunks


def _split_long(paragraph: str, chunk_size: int, overlap: int) -> List[str]:
    if len(paragraph) <= chunk_size:
        return [paragraph]
    pieces: List[str] = []
    start = 0
    while start < len(paragraph):
        end = min(len(paragraph), start + chunk_size)
        if end < len(paragraph):
            end = _last_break(paragraph, start, end)
        pieces.append(paragraph[start:end].strip())
        if end >= len(paragraph):
            break
        start = max(start + 1, end - overlap)
    return [p for p in pieces if p]


def _last_break(text: str, start: int, end: int) -> int:
    # Never cut inside the first half of the window.
    floor = start + (end - start) // 2
    for sep in _BREAKS:
        idx = text.rfind(sep, floor, end)
        if idx != -1:
            return idx + len(sep)
    return end


def _tail(chunk: str, overlap: int) -> str:
    if overlap <= 0 or len(chunk) <= overlap:
        return ""
    tail = chunk[-overlap:]
    space = tail.find(" ")
    return tail[space + 1:].strip() if space != -1 else tail.strip()
