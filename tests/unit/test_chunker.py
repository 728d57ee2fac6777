"""
Unit tests for the fixed-window chunker.
"""

import pytest

from memory_pipeline.chunking.chunker import Chunker, charset_of, compute_boundaries
from memory_pipeline.contracts.models import ChunkingConfig
from memory_pipeline.core.status import StatusCode


def assert_covers(windows, length, overlap):
    """Windows start at 0, end at length, and never leave gaps."""
    assert windows[0][0] == 0
    assert windows[-1][1] == length
    for (s1, e1), (s2, e2) in zip(windows, windows[1:]):
        assert s2 <= e1, "gap between windows"
        assert e1 - s2 <= overlap
        assert s2 > s1


class TestComputeBoundaries:

    def test_ten_thousand_bytes(self):
        windows = compute_boundaries(b"a" * 10000, 2000, 200)

        assert windows == [
            (0, 2000),
            (1800, 3800),
            (3600, 5600),
            (5400, 7400),
            (7200, 9200),
            (9000, 10000),
        ]

    def test_no_overlap(self):
        assert compute_boundaries(b"a" * 25, 10, 0) == [(0, 10), (10, 20), (20, 25)]

    def test_content_shorter_than_window(self):
        assert compute_boundaries(b"short", 2000, 200) == [(0, 5)]

    def test_empty_content(self):
        assert compute_boundaries(b"", 10, 2) == []

    @pytest.mark.parametrize("size,overlap", [(0, 0), (10, 10), (10, -1)])
    def test_invalid_configuration(self, size, overlap):
        with pytest.raises(ValueError):
            compute_boundaries(b"abc", size, overlap)

    def test_utf8_boundaries_stay_on_characters(self):
        content = ("é" * 20).encode("utf-8")

        windows = compute_boundaries(content, 7, 2)

        assert_covers(windows, len(content), 2)
        for start, end in windows:
            content[start:end].decode("utf-8")

    def test_character_wider_than_window(self):
        content = "😀😀".encode("utf-8")

        windows = compute_boundaries(content, 2, 1)

        assert windows == [(0, 4), (4, 8)]

    def test_sub_range(self):
        assert compute_boundaries(b"a" * 30, 10, 0, lo=5, hi=25) == [(5, 15), (15, 25)]

    @pytest.mark.parametrize("length,size,overlap", [
        (1, 1, 0), (99, 10, 3), (100, 10, 9), (4097, 512, 64),
    ])
    def test_coverage(self, length, size, overlap):
        windows = compute_boundaries(b"x" * length, size, overlap)

        assert_covers(windows, length, overlap)
        assert all(e - s <= size for s, e in windows)


class TestChunker:

    def test_records_carry_offsets_and_text(self):
        chunker = Chunker(ChunkingConfig(max_chunk_size=4, overlap_size=1))

        records = chunker.chunk(b"abcdefghij").value

        assert [(r.sequence_number, r.start_offset, r.end_offset) for r in records] == [
            (0, 0, 4), (1, 3, 7), (2, 6, 10),
        ]
        assert [r.text for r in records] == ["abcd", "defg", "ghij"]
        assert not any(r.oversized for r in records)

    def test_rechunking_is_idempotent(self):
        chunker = Chunker(ChunkingConfig(max_chunk_size=64, overlap_size=8))
        content = ("The quick brown fox jumps over the lazy dog. " * 40).encode("utf-8")

        first = chunker.chunk(content).value
        second = chunker.chunk(content).value

        assert first == second

    def test_empty_content_yields_no_chunks(self):
        assert Chunker().chunk(b"").value == []

    def test_invalid_config_returns_status(self):
        result = Chunker(ChunkingConfig(max_chunk_size=10, overlap_size=10)).chunk(b"abc")

        assert not result.is_ok
        assert result.status.code == StatusCode.INVALID_ARGUMENT

    def test_windows_split_below_input_limit(self):
        chunker = Chunker(ChunkingConfig(max_chunk_size=20, overlap_size=2))

        records = chunker.chunk(b"a" * 30, max_input_length=8).value

        assert all(r.length <= 8 for r in records)
        assert not any(r.oversized for r in records)
        assert [r.sequence_number for r in records] == list(range(len(records)))
        assert records[0].start_offset == 0
        assert records[-1].end_offset == 30

    def test_unsplittable_window_is_oversized(self):
        chunker = Chunker(ChunkingConfig(max_chunk_size=10, overlap_size=5))

        records = chunker.chunk(b"a" * 10, max_input_length=4).value

        assert len(records) == 1
        assert records[0].oversized

    def test_latin1_content(self):
        chunker = Chunker(ChunkingConfig(max_chunk_size=3, overlap_size=0))

        records = chunker.chunk("ÀÉÎÕÜ".encode("latin-1"), content_type="text/plain; charset=latin-1").value

        assert [r.text for r in records] == ["ÀÉÎ", "ÕÜ"]


class TestCharset:

    @pytest.mark.parametrize("content_type,expected", [
        (None, "utf-8"),
        ("text/plain", "utf-8"),
        ("text/plain; charset=ISO-8859-1", "iso-8859-1"),
        ('text/html; charset="utf-16"', "utf-16"),
    ])
    def test_charset_of(self, content_type, expected):
        assert charset_of(content_type) == expected
