"""Tests for fixed-size text chunking."""

from readaloud.playback.chunker import find_chunk_index, split_text


def test_split_reproduces_text_and_offsets_are_contiguous() -> None:
    text = "The quick brown fox jumps over the lazy dog. " * 23
    for max_chars in (1, 7, 50, 300, len(text), len(text) + 5):
        chunks = split_text(text, max_chars)

        assert "".join(chunk.text for chunk in chunks) == text
        assert chunks[0].start_offset == 0
        assert chunks[-1].end_offset == len(text)
        for left, right in zip(chunks, chunks[1:]):
            assert left.end_offset == right.start_offset
        assert all(0 < len(chunk) <= max_chars for chunk in chunks)


def test_split_700_chars_by_300() -> None:
    chunks = split_text("x" * 700, 300)

    assert [(c.start_offset, c.end_offset) for c in chunks] == [
        (0, 300),
        (300, 600),
        (600, 700),
    ]
    assert all(chunk.duration_millis is None for chunk in chunks)


def test_split_degenerate_inputs_give_no_chunks() -> None:
    assert split_text("", 10) == []
    assert split_text("hello", 0) == []
    assert split_text("hello", -3) == []


def test_split_may_cut_words() -> None:
    chunks = split_text("hello world", 4)

    assert [chunk.text for chunk in chunks] == ["hell", "o wo", "rld"]


def test_find_chunk_index_by_start_offset() -> None:
    chunks = split_text("y" * 900, 300)

    assert find_chunk_index(chunks, 300) == 1
    assert find_chunk_index(chunks, 0) == 0
    assert find_chunk_index(chunks, 450) is None
