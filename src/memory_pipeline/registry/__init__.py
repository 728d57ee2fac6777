"""
Embedder registry.
"""

from .embedder_registry import EmbedderRegistry, validate_usable

__all__ = ["EmbedderRegistry", "validate_usable"]
