"""Boundary-aware sliding-window chunking."""

from __future__ import annotations

import re
from bisect import bisect_right
from collections.abc import Sequence
from typing import Any

from rag_gateway.config import ChunkingConfig
from rag_gateway.types import DocumentChunk, LoadedText, OffsetAnchor

_TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]", flags=re.UNICODE)

# Ordered by preference: paragraph break, sentence end, line break.
_BOUNDARY_PATTERNS = (
    re.compile(r"\n[ \t]*\n"),
    re.compile(r"[.!?。！？][\"')\]]*\s"),
    re.compile(r"\n"),
)


class SlidingWindowChunker:
    """Splits normalized text into overlapping, bounded chunks.

    Every chunk is an exact slice of the input, so offsets always satisfy
    `text[start_offset:end_offset] == chunk.text`. The algorithm:

    1. Take up to `chunk_size` units from the current start.
    2. Inside the trailing `boundary_window` units, break after the last
       paragraph break, else the last sentence end, else the last newline.
       The window never reaches back into the first `overlap + 1` units.
       With no natural boundary, break at the hard limit.
    3. Start the next chunk `overlap` units before the previous end, but
       always at least one unit past the previous start.

    Units are characters or `\\w+|[^\\w\\s]` tokens depending on the config.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()
        if self.config.overlap >= self.config.chunk_size:
            raise ValueError("overlap must be less than chunk_size")

    def chunk_document(
        self,
        doc_id: str,
        source: LoadedText | str,
        metadata: dict[str, Any] | None = None,
    ) -> list[DocumentChunk]:
        """Chunk a document's normalized text.

        Args:
            doc_id: Owning document id, used to derive chunk ids.
            source: Loader output (anchors feed page/section metadata) or raw text.
            metadata: Extra key/values copied onto every chunk.

        Returns:
            Chunks indexed from 0 in emission order. Blank input yields none.
        """

        if isinstance(source, LoadedText):
            text, anchors = source.text, source.anchors
        else:
            text, anchors = source, []
        spans = self.split(text)
        total = len(spans)

        chunks: list[DocumentChunk] = []
        for index, (start, end) in enumerate(spans):
            chunk_metadata: dict[str, Any] = {
                **(metadata or {}),
                "chunk_index": index,
                "chunk_size": end - start,
                "total_chunks": total,
            }
            chunk_metadata.update(_anchor_fields(anchors, start))
            chunks.append(
                DocumentChunk(
                    chunk_id=f"{doc_id}-chunk-{index:04d}",
                    doc_id=doc_id,
                    index=index,
                    text=text[start:end],
                    start_offset=start,
                    end_offset=end,
                    metadata=chunk_metadata,
                )
            )
        return chunks

    def split(self, text: str) -> list[tuple[int, int]]:
        """Return half-open character spans covering `text`."""

        if not text.strip():
            return []

        positions = self._unit_positions(text)
        unit_count = len(positions) - 1
        size = self.config.chunk_size

        spans: list[tuple[int, int]] = []
        start = 0
        while True:
            hard_end = min(start + size, unit_count)
            end = hard_end if hard_end == unit_count else self._break_at(text, positions, start, hard_end)
            spans.append((positions[start], positions[end]))
            if end >= unit_count:
                break
            start = max(end - self.config.overlap, start + 1)
        return spans

    def _unit_positions(self, text: str) -> list[int]:
        if self.config.unit == "chars":
            return list(range(len(text) + 1))
        starts = [match.start() for match in _TOKEN_PATTERN.finditer(text)]
        if not starts:
            return [0, len(text)]
        return [0, *starts[1:], len(text)]

    def _break_at(self, text: str, positions: list[int], start: int, hard_end: int) -> int:
        # Breaks land past the overlap so every chunk advances.
        window_start = max(start + self.config.overlap + 1, hard_end - self.config.boundary_window)
        if window_start >= hard_end:
            return hard_end

        lo, hi = positions[window_start], positions[hard_end]
        for pattern in _BOUNDARY_PATTERNS:
            last_break: int | None = None
            for match in pattern.finditer(text, lo, hi):
                last_break = match.end()
            if last_break is None:
                continue
            unit = bisect_right(positions, last_break) - 1
            if window_start <= unit <= hard_end:
                return unit
        return hard_end


def merge_chunk_texts(chunks: Sequence[DocumentChunk]) -> str:
    """Rebuild the covered text from ordered chunks, dropping overlap regions."""

    ordered = sorted(chunks, key=lambda chunk: chunk.start_offset)
    if not ordered:
        return ""
    parts = [ordered[0].text]
    covered_to = ordered[0].end_offset
    for chunk in ordered[1:]:
        if chunk.end_offset <= covered_to:
            continue
        skip = max(0, covered_to - chunk.start_offset)
        parts.append(chunk.text[skip:])
        covered_to = chunk.end_offset
    return "".join(parts)


def _anchor_fields(anchors: Sequence[OffsetAnchor], offset: int) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for anchor in anchors:
        if anchor.offset > offset:
            break
        if anchor.page is not None:
            fields["page"] = anchor.page
        if anchor.section is not None:
            fields["section"] = anchor.section
    return fields
