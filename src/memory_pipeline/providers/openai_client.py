"""
OpenAI embeddings client.

Request:  {"model": ..., "input": [...], "encoding_format": "float"}
Response: {"data": [{"index": 0, "embedding": [...]}, ...]}
"""

from typing import Any, Dict, List, Sequence, Tuple

from ..core.status import Status, StatusOr
from .base import EmbeddingClient, Vector, read_float_vectors


def parse_openai_data(body: Any, source: str) -> StatusOr[List[Vector]]:
    """Read the "data" array of an OpenAI-style response, ordered by index."""
    data = body.get("data") if isinstance(body, dict) else None
    if not isinstance(data, list):
        return StatusOr.of_status(Status.internal(
            f"malformed {source} response: missing 'data' array", transient=True
        ))
    try:
        ordered = sorted(
            data,
            key=lambda item: item.get("index", 0) if isinstance(item, dict) else 0,
        )
        embeddings = [item["embedding"] for item in ordered]
    except (KeyError, TypeError) as e:
        return StatusOr.of_status(Status.internal(
            f"malformed {source} response: {e}", transient=True
        ))
    return read_float_vectors(embeddings, source)


class OpenAIEmbeddingClient(EmbeddingClient):
    """
    Client for the OpenAI /v1/embeddings API.

    Requires an API key; an organization is sent when the stored
    credentials include one.
    """

    def check_configuration(self) -> Status:
        if not self.credentials.api_key:
            return Status.invalid_argument(
                f"OPENAI embedder {self.embedder.embedder_id} has no API key"
            )
        return Status.success()

    def build_request(self, texts: Sequence[str]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        payload = {
            "model": self.embedder.model_identifier,
            "input": list(texts),
            "encoding_format": "float",
        }
        headers = self._auth_headers()
        if self.credentials.organization:
            headers["OpenAI-Organization"] = self.credentials.organization
        return payload, headers

    def parse_response(self, body: Any) -> StatusOr[List[Vector]]:
        return parse_openai_data(body, "OpenAI")
