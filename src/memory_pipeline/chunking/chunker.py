"""
Chunker - Split memory content into offset-addressed windows for embedding.

Implements deterministic fixed-window chunking with:
- Byte offsets into the original content (half-open [start, end))
- Configurable window size and overlap
- UTF-8 aware boundaries (never splits a multi-byte character)
- Further splitting of windows that exceed the embedder's input limit
"""

import logging
from typing import List, Optional, Tuple

from ..contracts.models import ChunkingConfig, ChunkRecord
from ..core.logging import LoggerLike
from ..core.status import StatusOr


DEFAULT_CHARSET = "utf-8"


class Chunker:
    """
    Splits raw content into ordered chunk records.

    Identical content, configuration and input limit always produce
    identical boundaries, so re-chunking is idempotent.

    Example:
        >>> chunker = Chunker(ChunkingConfig(max_chunk_size=2000, overlap_size=200))
        >>> result = chunker.chunk(b"x" * 10000)
        >>> [(c.start_offset, c.end_offset) for c in result.value][:2]
        [(0, 2000), (1800, 3800)]
    """

    def __init__(
        self,
        config: Optional[ChunkingConfig] = None,
        logger: Optional[LoggerLike] = None,
    ):
        self.config = config or ChunkingConfig()
        self.logger = logger or logging.getLogger(__name__)

    def chunk(
        self,
        content: bytes,
        content_type: Optional[str] = None,
        max_input_length: Optional[int] = None,
    ) -> StatusOr[List[ChunkRecord]]:
        """
        Split content into chunk records.

        Args:
            content: Raw bytes of the memory
            content_type: MIME type; its charset parameter selects the decoding
            max_input_length: Embedder input limit in bytes, if any

        Returns:
            StatusOr with the ordered chunk records (empty for empty content),
            or INVALID_ARGUMENT for a bad configuration
        """
        status = self.config.validate()
        if not status.is_ok:
            return StatusOr.of_status(status)
        if max_input_length is not None and max_input_length <= 0:
            max_input_length = None

        if not content:
            return StatusOr.of_value([])

        charset = charset_of(content_type)
        utf8 = charset.replace("_", "-") in ("utf-8", "utf8")
        windows = compute_boundaries(
            content,
            self.config.max_chunk_size,
            self.config.overlap_size,
            utf8=utf8,
        )

        spans: List[Tuple[int, int, bool]] = []
        for start, end in windows:
            if max_input_length is None or end - start <= max_input_length:
                spans.append((start, end, False))
                continue
            spans.extend(self._split_window(content, start, end, max_input_length, utf8))

        records = [
            ChunkRecord(
                sequence_number=i,
                start_offset=start,
                end_offset=end,
                text=content[start:end].decode(charset, errors="replace"),
                oversized=oversized,
            )
            for i, (start, end, oversized) in enumerate(spans)
        ]

        oversized_count = sum(1 for r in records if r.oversized)
        if oversized_count:
            self.logger.warning(
                f"{oversized_count} chunk(s) cannot be split below the "
                f"input limit of {max_input_length} bytes"
            )
        self.logger.debug(
            f"Created {len(records)} chunks from {len(content)} bytes "
            f"(size={self.config.max_chunk_size}, overlap={self.config.overlap_size})"
        )
        return StatusOr.of_value(records)

    def _split_window(
        self,
        content: bytes,
        start: int,
        end: int,
        limit: int,
        utf8: bool,
    ) -> List[Tuple[int, int, bool]]:
        overlap = self.config.overlap_size
        if overlap >= limit:
            # Sub-windows could never advance past the overlap.
            return [(start, end, True)]
        sub_windows = compute_boundaries(
            content, limit, overlap, utf8=utf8, lo=start, hi=end
        )
        return [(s, e, e - s > limit) for s, e in sub_windows]


def charset_of(content_type: Optional[str]) -> str:
    """Extract the charset parameter of a MIME type (default utf-8)."""
    if not content_type:
        return DEFAULT_CHARSET
    for param in content_type.split(";")[1:]:
        name, _, value = param.partition("=")
        if name.strip().lower() == "charset" and value.strip():
            charset = value.strip().strip('"').lower()
            try:
                "".encode(charset)
            except LookupError:
                return DEFAULT_CHARSET
            return charset
    return DEFAULT_CHARSET


def _is_continuation(byte: int) -> bool:
    return (byte & 0xC0) == 0x80


def _align_back(content: bytes, pos: int, floor: int) -> int:
    while pos > floor and pos < len(content) and _is_continuation(content[pos]):
        pos -= 1
    return pos


def _align_forward(content: bytes, pos: int, ceiling: int) -> int:
    while pos < ceiling and _is_continuation(content[pos]):
        pos += 1
    return pos


def compute_boundaries(
    content: bytes,
    max_chunk_size: int,
    overlap_size: int,
    utf8: bool = True,
    lo: int = 0,
    hi: Optional[int] = None,
) -> List[Tuple[int, int]]:
    """
    Compute fixed-window boundaries over content[lo:hi].

    Window i starts at lo + i * (max_chunk_size - overlap_size) and ends
    max_chunk_size bytes later, clipped to hi. With utf8=True a boundary
    that falls inside a multi-byte sequence is moved to the start of that
    sequence; a window never ends before it has covered one character.

    Args:
        content: Raw bytes
        max_chunk_size: Window length in bytes
        overlap_size: Bytes shared by consecutive windows
        utf8: Whether to keep boundaries on UTF-8 character starts
        lo: Start of the range to cover
        hi: End of the range to cover (default: len(content))

    Returns:
        List of (start, end) tuples covering [lo, hi) without gaps
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")
    if overlap_size < 0:
        raise ValueError("overlap_size must be non-negative")
    if overlap_size >= max_chunk_size:
        raise ValueError("overlap_size must be less than max_chunk_size")

    hi = len(content) if hi is None else hi
    if hi <= lo:
        return []

    windows = []
    start = lo
    while True:
        end = min(start + max_chunk_size, hi)
        if utf8 and end < hi:
            aligned = _align_back(content, end, start)
            if aligned <= start:
                # A single character wider than the window.
                aligned = _align_forward(content, start + 1, hi)
            end = aligned
        windows.append((start, end))
        if end >= hi:
            break

        next_start = end - overlap_size
        if utf8:
            next_start = _align_forward(content, next_start, end)
        if next_start <= start:
            next_start = end
        start = next_start

    return windows
