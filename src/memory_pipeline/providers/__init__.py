"""
Embedding provider clients.

Supported providers:
- OPENAI: OpenAI embeddings API
- VLLM: vLLM OpenAI-compatible server
- TEI: Hugging Face Text Embeddings Inference (native or OpenAI-compatible route)
"""

from .base import EmbeddingClient, ProviderSettings, classify_http_status, parse_retry_after
from .factory import CLIENT_CLASSES, create_embedding_client
from .openai_client import OpenAIEmbeddingClient
from .rate_limiter import EmbedderLimiter, LimiterRegistry
from .tei_client import TEIEmbeddingClient
from .vllm_client import VLLMEmbeddingClient

__all__ = [
    "CLIENT_CLASSES",
    "EmbedderLimiter",
    "EmbeddingClient",
    "LimiterRegistry",
    "OpenAIEmbeddingClient",
    "ProviderSettings",
    "TEIEmbeddingClient",
    "VLLMEmbeddingClient",
    "classify_http_status",
    "create_embedding_client",
    "parse_retry_after",
]
