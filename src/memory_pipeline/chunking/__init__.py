"""
Content chunking for the memory pipeline.
"""

from .chunker import Chunker, compute_boundaries

__all__ = ["Chunker", "compute_boundaries"]
