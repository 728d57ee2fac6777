"""
vLLM embeddings client.

vLLM serves the OpenAI-compatible /v1/embeddings route; authentication is
optional and only sent when credentials are stored.
"""

from typing import Any, Dict, List, Sequence, Tuple

from ..core.status import StatusOr
from .base import EmbeddingClient, Vector
from .openai_client import parse_openai_data


class VLLMEmbeddingClient(EmbeddingClient):
    """Client for a vLLM server's OpenAI-compatible embeddings endpoint."""

    def build_request(self, texts: Sequence[str]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        payload = {
            "model": self.embedder.model_identifier,
            "input": list(texts),
        }
        return payload, self._auth_headers()

    def parse_response(self, body: Any) -> StatusOr[List[Vector]]:
        return parse_openai_data(body, "vLLM")
