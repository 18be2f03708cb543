import pytest

from rag_gateway.config import ChunkingConfig
from rag_gateway.ingest.chunker import SlidingWindowChunker, merge_chunk_texts
from rag_gateway.types import LoadedText, OffsetAnchor


def _unbroken_text(length: int) -> str:
    alphabet = "abcdefghijklmnopqrstuvwxyz"
    return "".join(alphabet[i % len(alphabet)] for i in range(length))


def _prose() -> str:
    paragraph = (
        "Data governance requires strict access control and encryption. "
        "Auditors review the access logs every quarter! "
        "Are retention rules documented?\n"
        "Exceptions need written approval."
    )
    return "\n\n".join(f"Section {i}. {paragraph}" for i in range(12))


def test_chunker_3000_chars_with_overlap_yields_four_chunks() -> None:
    chunker = SlidingWindowChunker(ChunkingConfig(chunk_size=1000, overlap=100))

    chunks = chunker.chunk_document("doc-1", _unbroken_text(3000))

    assert len(chunks) == 4
    assert [chunk.index for chunk in chunks] == [0, 1, 2, 3]
    assert all(len(chunk.text) <= 1000 for chunk in chunks)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_offset < previous.end_offset
        assert previous.end_offset - current.start_offset <= 100
    assert chunks[-1].end_offset == 3000


def test_chunks_are_exact_slices_and_merge_back_to_input() -> None:
    text = _prose()
    chunker = SlidingWindowChunker(ChunkingConfig(chunk_size=180, overlap=40, boundary_window=60))

    chunks = chunker.chunk_document("doc-1", text)

    assert len(chunks) > 3
    assert chunks[0].start_offset == 0
    assert chunks[-1].end_offset == len(text)
    for chunk in chunks:
        assert text[chunk.start_offset : chunk.end_offset] == chunk.text
    for previous, current in zip(chunks, chunks[1:]):
        assert current.start_offset <= previous.end_offset
    assert merge_chunk_texts(chunks) == text


def test_chunker_prefers_paragraph_break_inside_window() -> None:
    text = "A" * 50 + ". " + "b" * 30 + "\n\n" + "c" * 200
    chunker = SlidingWindowChunker(ChunkingConfig(chunk_size=100, overlap=10, boundary_window=60))

    first = chunker.chunk_document("doc-1", text)[0]

    assert first.text == "A" * 50 + ". " + "b" * 30 + "\n\n"


def test_chunker_falls_back_to_sentence_then_hard_limit() -> None:
    sentence_text = "A" * 50 + ". " + "b" * 200
    no_boundary_text = "x" * 250
    chunker = SlidingWindowChunker(ChunkingConfig(chunk_size=100, overlap=10, boundary_window=60))

    assert chunker.chunk_document("doc-1", sentence_text)[0].text == "A" * 50 + ". "
    assert len(chunker.chunk_document("doc-2", no_boundary_text)[0].text) == 100


def test_chunker_edge_cases() -> None:
    chunker = SlidingWindowChunker(ChunkingConfig(chunk_size=100, overlap=10))

    assert chunker.chunk_document("doc-1", "") == []
    assert chunker.chunk_document("doc-1", "  \n\t ") == []

    single = chunker.chunk_document("doc-1", "Short note.")
    assert len(single) == 1
    assert single[0].text == "Short note."
    assert single[0].chunk_id == "doc-1-chunk-0000"
    assert single[0].metadata["total_chunks"] == 1


def test_chunker_is_deterministic() -> None:
    chunker = SlidingWindowChunker(ChunkingConfig(chunk_size=150, overlap=30, boundary_window=50))
    text = _prose()

    first = [(c.text, c.start_offset, c.end_offset) for c in chunker.chunk_document("d", text)]
    second = [(c.text, c.start_offset, c.end_offset) for c in chunker.chunk_document("d", text)]

    assert first == second


def test_token_unit_counts_words_and_punctuation() -> None:
    text = "one two three four five six seven eight nine ten"
    chunker = SlidingWindowChunker(
        ChunkingConfig(chunk_size=4, overlap=1, boundary_window=0, unit="tokens")
    )

    chunks = chunker.chunk_document("doc-1", text)

    assert [chunk.text for chunk in chunks] == [
        "one two three four ",
        "four five six seven ",
        "seven eight nine ten",
    ]
    assert merge_chunk_texts(chunks) == text


def test_anchors_feed_page_and_section_metadata() -> None:
    loaded = LoadedText(
        text=_unbroken_text(300),
        source_format="pdf",
        anchors=[
            OffsetAnchor(offset=0, page=1, section="Intro"),
            OffsetAnchor(offset=150, page=2),
        ],
    )
    chunker = SlidingWindowChunker(ChunkingConfig(chunk_size=100, overlap=0))

    chunks = chunker.chunk_document("doc-1", loaded, metadata={"source": "unit"})

    assert [chunk.metadata["page"] for chunk in chunks] == [1, 1, 2]
    assert all(chunk.metadata["section"] == "Intro" for chunk in chunks)
    assert all(chunk.metadata["source"] == "unit" for chunk in chunks)


def test_overlap_must_be_smaller_than_chunk_size() -> None:
    with pytest.raises(ValueError):
        SlidingWindowChunker(ChunkingConfig(chunk_size=100, overlap=100))


def test_merge_chunk_texts_empty() -> None:
    assert merge_chunk_texts([]) == ""


def test_wide_boundary_window_does_not_emit_near_duplicate_chunks() -> None:
    text = "x" * 110 + ". " + "y" * 400
    chunker = SlidingWindowChunker(ChunkingConfig(chunk_size=200, overlap=150, boundary_window=100))

    chunks = chunker.chunk_document("doc-1", text)

    starts = [chunk.start_offset for chunk in chunks]
    assert starts == [0, 50, 100, 150, 200, 250, 300, 350]
    assert chunks[-1].end_offset == len(text)
    assert merge_chunk_texts(chunks) == text
