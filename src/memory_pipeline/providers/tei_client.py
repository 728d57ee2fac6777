"""
Text Embeddings Inference (TEI) client.

Covers both TEI routes:
- native /embed: {"inputs": [...], "truncate": false} → [[...], ...]
- OpenAI-compatible /v1/embeddings: same shape as OpenAI

The route is chosen from the embedder's api_path.
"""

from typing import Any, Dict, List, Sequence, Tuple

from ..core.status import StatusOr
from .base import EmbeddingClient, Vector, read_float_vectors
from .openai_client import parse_openai_data


class TEIEmbeddingClient(EmbeddingClient):
    """
    Client for Hugging Face Text Embeddings Inference servers.

    Inputs are never truncated server-side; over-long chunks are split by
    the chunker before they get here.
    """

    @property
    def openai_compatible(self) -> bool:
        return (self.embedder.api_path or "").rstrip("/").endswith("/embeddings")

    def build_request(self, texts: Sequence[str]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        if self.openai_compatible:
            payload = {
                "model": self.embedder.model_identifier,
                "input": list(texts),
            }
        else:
            payload = {
                "model": self.embedder.model_identifier,
                "inputs": list(texts),
                "truncate": False,
            }
        return payload, self._auth_headers()

    def parse_response(self, body: Any) -> StatusOr[List[Vector]]:
        if self.openai_compatible:
            return parse_openai_data(body, "TEI")
        return read_float_vectors(body, "TEI")
