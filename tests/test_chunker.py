"""
Unit tests for the chunk builder.
Tests sequential and grouped windowing and the adaptive window size.
"""

import pytest

from conftest import HEART_RATE, STEP_COUNT, make_record
from healthrag.rag.chunker import (
    ChunkStrategy,
    calculate_optimal_chunk_size,
    estimate_tokens,
    group_records_into_chunks,
    render_chunk,
)


class TestCalculateOptimalChunkSize:
    """Tests for the adaptive window size."""

    def test_empty_group_returns_default(self):
        assert calculate_optimal_chunk_size([]) == 35
        assert calculate_optimal_chunk_size([], default_size=20) == 20

    def test_short_records_clamp_to_maximum(self):
        records = [make_record(minutes=i) for i in range(20)]
        assert calculate_optimal_chunk_size(records) == 35

    def test_long_records_clamp_to_minimum(self):
        records = [make_record(device="x" * 4000, minutes=i) for i in range(5)]
        assert calculate_optimal_chunk_size(records) == 10

    def test_in_range_value(self):
        # ~1000 char lines -> ~250 tokens each -> 7000 // 250 = 28
        records = [make_record(device="d" * 900, minutes=i) for i in range(3)]
        size = calculate_optimal_chunk_size(records)
        assert 10 < size < 35

    def test_only_first_ten_records_are_sampled(self):
        short = [make_record(minutes=i) for i in range(10)]
        long_tail = [make_record(device="x" * 8000, minutes=100 + i) for i in range(50)]
        assert calculate_optimal_chunk_size(short + long_tail) == 35

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2


class TestGroupRecordsIntoChunks:
    """Tests for chunk building."""

    def test_empty_input(self):
        assert group_records_into_chunks([]) == []
        assert group_records_into_chunks([], strategy=ChunkStrategy.SEQUENTIAL) == []

    def test_single_record(self):
        chunks = group_records_into_chunks([make_record()])
        assert len(chunks) == 1
        assert chunks[0].size == 1
        assert chunks[0].index == 0

    def test_hundred_records_fixed_window(self):
        records = [make_record(value=str(i), minutes=i) for i in range(100)]
        chunks = group_records_into_chunks(records, max_chunk_size=35, adaptive=False)
        assert [c.size for c in chunks] == [35, 35, 30]
        flattened = [r.value for c in chunks for r in c.records]
        assert flattened == [str(i) for i in range(100)]

    def test_sequential_keeps_input_order(self):
        records = [
            make_record(type=HEART_RATE if i % 2 else STEP_COUNT, value=str(i), minutes=-i)
            for i in range(40)
        ]
        chunks = group_records_into_chunks(records, strategy="sequential")
        assert [c.size for c in chunks] == [15, 15, 10]
        assert [r.value for c in chunks for r in c.records] == [str(i) for i in range(40)]

    def test_grouped_sorts_chronologically_within_type(self):
        records = [make_record(value=str(i), minutes=10 - i) for i in range(5)]
        chunks = group_records_into_chunks(records)
        assert [r.value for r in chunks[0].records] == ["4", "3", "2", "1", "0"]

    def test_grouped_sort_is_stable_for_equal_times(self):
        records = [make_record(value=str(i), minutes=0) for i in range(5)]
        chunks = group_records_into_chunks(records)
        assert [r.value for r in chunks[0].records] == ["0", "1", "2", "3", "4"]

    def test_windows_never_straddle_types(self):
        records = [make_record(type=HEART_RATE, minutes=i) for i in range(40)]
        records += [make_record(type=STEP_COUNT, minutes=i) for i in range(5)]
        chunks = group_records_into_chunks(records)
        for chunk in chunks:
            assert len({r.type for r in chunk.records}) == 1
        assert [c.index for c in chunks] == list(range(len(chunks)))

    @pytest.mark.parametrize("strategy", list(ChunkStrategy))
    @pytest.mark.parametrize("max_size", [1, 7, 35])
    def test_no_record_lost_and_window_bounded(self, strategy, max_size):
        records = [
            make_record(type=(HEART_RATE, STEP_COUNT, "HKCategoryTypeIdentifierSleepAnalysis")[i % 3], minutes=i)
            for i in range(53)
        ]
        chunks = group_records_into_chunks(records, strategy=strategy, max_chunk_size=max_size)
        assert sum(c.size for c in chunks) == len(records)
        assert all(c.size <= max_size for c in chunks)

    def test_invalid_max_chunk_size(self):
        with pytest.raises(ValueError):
            group_records_into_chunks([make_record()], max_chunk_size=0)


def test_render_chunk_joins_lines():
    chunks = group_records_into_chunks(
        [make_record(value="70", minutes=0), make_record(value="71", minutes=1)]
    )
    lines = render_chunk(chunks[0]).split("\n")
    assert len(lines) == 2
    assert lines[0].startswith("heart rate: 70 count/min recorded from")
