"""
Data contracts for the memory pipeline.
"""

from .models import (
    DEFAULT_API_PATH,
    ChunkingConfig,
    ChunkRecord,
    ChunkStatusCounts,
    ChunkStatusView,
    Embedder,
    Memory,
    MemoryChunk,
    MemoryStatusReport,
    Modality,
    ProcessingStatus,
    ProviderType,
    Space,
    VectorStatus,
)
from .labels import matches_label_selectors, validate_string_map

__all__ = [
    "DEFAULT_API_PATH",
    "ChunkingConfig",
    "ChunkRecord",
    "ChunkStatusCounts",
    "ChunkStatusView",
    "Embedder",
    "Memory",
    "MemoryChunk",
    "MemoryStatusReport",
    "Modality",
    "ProcessingStatus",
    "ProviderType",
    "Space",
    "VectorStatus",
    "matches_label_selectors",
    "validate_string_map",
]
