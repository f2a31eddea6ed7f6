"""Record chunking utilities.

This module provides functions for grouping health records into chunks
that are embedded as one unit.
"""

import math
from enum import Enum
from typing import List

from healthrag.models import Chunk, Record
from healthrag.rag.parser import format_record

DEFAULT_SEQUENTIAL_CHUNK_SIZE = 15
DEFAULT_MAX_CHUNK_SIZE = 35
MIN_ADAPTIVE_CHUNK_SIZE = 10
MAX_ADAPTIVE_CHUNK_SIZE = 35
ADAPTIVE_SAMPLE_SIZE = 10
# Token budget for the records of one chunk; leaves headroom under the
# embedding model's input limit
TARGET_CHUNK_TOKENS = 7000
CHARS_PER_TOKEN = 4


class ChunkStrategy(str, Enum):
    """How records are windowed into chunks."""

    SEQUENTIAL = "sequential"
    GROUPED = "grouped"


def estimate_tokens(text: str) -> int:
    """Rough token count used for budget checks (4 characters per token)."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def calculate_optimal_chunk_size(
    records: List[Record], default_size: int = DEFAULT_MAX_CHUNK_SIZE
) -> int:
    """Pick a window size so a chunk of these records stays within budget.

    Args:
        records: Records of one metric type.
        default_size: Size returned when there is nothing to sample.

    Returns:
        ``default_size`` for an empty list, otherwise a size in
        ``[MIN_ADAPTIVE_CHUNK_SIZE, MAX_ADAPTIVE_CHUNK_SIZE]``.
    """
    if not records:
        return default_size

    sample = records[:ADAPTIVE_SAMPLE_SIZE]
    avg_length = sum(len(format_record(r)) for r in sample) / len(sample)
    tokens_per_record = max(1, math.ceil(avg_length / CHARS_PER_TOKEN))
    optimal = TARGET_CHUNK_TOKENS // tokens_per_record
    return max(MIN_ADAPTIVE_CHUNK_SIZE, min(MAX_ADAPTIVE_CHUNK_SIZE, optimal))


def group_by_type(records: List[Record]) -> dict[str, List[Record]]:
    """Group records by metric type, keeping input order inside each group."""
    groups: dict[str, List[Record]] = {}
    for record in records:
        groups.setdefault(record.type, []).append(record)
    return groups


def _windows(records: List[Record], size: int) -> List[List[Record]]:
    return [records[i : i + size] for i in range(0, len(records), size)]


def group_records_into_chunks(
    records: List[Record],
    strategy: ChunkStrategy | str = ChunkStrategy.GROUPED,
    max_chunk_size: int | None = None,
    adaptive: bool = True,
) -> List[Chunk]:
    """Split records into ordered chunks.

    Args:
        records: Parsed records.
        strategy: ``sequential`` keeps input order and cuts fixed windows;
            ``grouped`` groups by type, sorts each group chronologically and
            cuts windows per group.
        max_chunk_size: Largest allowed chunk. Defaults to 15 for sequential
            and 35 for grouped.
        adaptive: For grouped chunking, size windows from the average record
            length instead of using ``max_chunk_size`` directly.

    Returns:
        Chunks with contiguous indexes starting at 0.
    """
    if not records:
        return []

    strategy = ChunkStrategy(strategy)
    if max_chunk_size is None:
        max_chunk_size = (
            DEFAULT_SEQUENTIAL_CHUNK_SIZE
            if strategy is ChunkStrategy.SEQUENTIAL
            else DEFAULT_MAX_CHUNK_SIZE
        )
    if max_chunk_size < 1:
        raise ValueError(f"max_chunk_size must be >= 1, got {max_chunk_size}")

    if strategy is ChunkStrategy.SEQUENTIAL:
        windows = _windows(records, max_chunk_size)
    else:
        windows = []
        for group in group_by_type(records).values():
            ordered = sorted(group, key=lambda r: r.start_time)
            size = max_chunk_size
            if adaptive:
                size = min(
                    calculate_optimal_chunk_size(ordered, max_chunk_size),
                    max_chunk_size,
                )
            windows.extend(_windows(ordered, size))

    return [Chunk(index=i, records=window) for i, window in enumerate(windows)]


def render_chunk(chunk: Chunk) -> str:
    """Text sent to the embedding provider for one chunk."""
    return "\n".join(format_record(r) for r in chunk.records)
