"""
Embedding client base class.

Each provider variant only knows how to build its request and read its
response; batching, the shared limiter, deadlines and the
transient/permanent error classification live here.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from ..contracts.models import Embedder
from ..core.logging import LoggerLike
from ..core.status import Status, StatusOr
from ..security.credentials import ProviderCredentials
from .rate_limiter import EmbedderLimiter


Vector = List[float]


@dataclass
class ProviderSettings:
    """
    Per-provider call settings.

    Attributes:
        timeout_seconds: Deadline for a single HTTP call
        max_batch_size: Maximum texts per request
        max_concurrency: Concurrent requests per embedder
        requests_per_second: Request rate per embedder (0 = unlimited)
    """
    timeout_seconds: float = 30.0
    max_batch_size: int = 64
    max_concurrency: int = 4
    requests_per_second: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProviderSettings":
        defaults = cls()
        return cls(
            timeout_seconds=float(data.get("timeout_seconds", defaults.timeout_seconds)),
            max_batch_size=int(data.get("max_batch_size", defaults.max_batch_size)),
            max_concurrency=int(data.get("max_concurrency", defaults.max_concurrency)),
            requests_per_second=float(
                data.get("requests_per_second", defaults.requests_per_second)
            ),
        )


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header (delta-seconds or HTTP-date) into seconds.
    """
    if not value:
        return None
    value = value.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def classify_http_status(
    status_code: int,
    headers: Mapping[str, str],
    body: str = "",
) -> Status:
    """
    Map a provider HTTP status to a pipeline Status.

    429 → RESOURCE_EXHAUSTED, 408/504 → DEADLINE_EXCEEDED and other 5xx →
    INTERNAL are transient; remaining 4xx are permanent INVALID_ARGUMENT.
    """
    if 200 <= status_code < 300:
        return Status.success()

    detail = f"HTTP {status_code}"
    if body:
        detail = f"{detail}: {body[:500]}"

    if status_code == 429:
        return Status.resource_exhausted(
            f"provider rate limit exceeded ({detail})",
            retry_after_seconds=parse_retry_after(headers.get("Retry-After")),
        )
    if status_code in (408, 504):
        return Status.deadline_exceeded(f"provider timed out ({detail})")
    if status_code >= 500:
        return Status.internal(f"provider error ({detail})", transient=True)
    if status_code >= 400:
        return Status.invalid_argument(f"provider rejected request ({detail})")
    return Status.internal(f"unexpected provider response ({detail})")


class EmbeddingClient(ABC):
    """
    Calls one embedder's vector-generation endpoint.

    embed() splits its input into batches of at most
    settings.max_batch_size, acquires the embedder's shared limiter around
    every HTTP call and verifies the vector count and dimensionality of
    each response.
    """

    def __init__(
        self,
        embedder: Embedder,
        credentials: Optional[ProviderCredentials] = None,
        settings: Optional[ProviderSettings] = None,
        limiter: Optional[EmbedderLimiter] = None,
        session: Optional[requests.Session] = None,
        logger: Optional[LoggerLike] = None,
    ):
        self.embedder = embedder
        self.credentials = credentials or ProviderCredentials()
        self.settings = settings or ProviderSettings()
        self.limiter = limiter or EmbedderLimiter(
            embedder.embedder_id,
            max_concurrency=self.settings.max_concurrency,
            requests_per_second=self.settings.requests_per_second,
        )
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    # Variant hooks

    @abstractmethod
    def build_request(self, texts: Sequence[str]) -> Tuple[Dict[str, Any], Dict[str, str]]:
        """Return (json_body, headers) for one batch."""
        pass

    @abstractmethod
    def parse_response(self, body: Any) -> StatusOr[List[Vector]]:
        """Extract vectors, in input order, from a decoded response body."""
        pass

    def check_configuration(self) -> Status:
        """Validate that the embedder can be called at all."""
        return Status.success()

    # Shared behavior

    def _auth_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.credentials.api_key:
            headers["Authorization"] = f"Bearer {self.credentials.api_key}"
        return headers

    def embed(self, texts: Sequence[str]) -> StatusOr[List[Vector]]:
        """
        Generate one vector per input text.

        Args:
            texts: Input texts

        Returns:
            Vectors in input order, or the Status of the first failed batch
            (transient for timeouts, rate limits and 5xx; permanent for 4xx
            and dimensionality mismatches)
        """
        status = self.check_configuration()
        if not status.is_ok:
            return StatusOr.of_status(status)
        if not texts:
            return StatusOr.of_value([])

        batch_size = max(1, self.settings.max_batch_size)
        vectors: List[Vector] = []
        for start in range(0, len(texts), batch_size):
            batch = list(texts[start:start + batch_size])
            result = self._embed_batch(batch)
            if not result.is_ok:
                return result
            vectors.extend(result.value)
        return StatusOr.of_value(vectors)

    def _embed_batch(self, batch: List[str]) -> StatusOr[List[Vector]]:
        url = self.embedder.url
        payload, headers = self.build_request(batch)

        try:
            with self.limiter.acquire():
                self.logger.debug(
                    f"POST {url} ({len(batch)} inputs, model {self.embedder.model_identifier})"
                )
                response = self.session.post(
                    url,
                    json=payload,
                    headers=headers,
                    timeout=self.settings.timeout_seconds,
                )
        except requests.exceptions.Timeout as e:
            return StatusOr.of_status(Status.deadline_exceeded(
                f"no response from {url} within {self.settings.timeout_seconds}s: {e}"
            ))
        except requests.exceptions.RequestException as e:
            return StatusOr.of_status(Status.internal(
                f"failed to reach {url}: {e}", transient=True
            ))

        status = classify_http_status(
            response.status_code, response.headers, _safe_text(response)
        )
        if not status.is_ok:
            self.logger.warning(f"Embedding call to {url} failed: {status}")
            return StatusOr.of_status(status)

        try:
            body = response.json()
        except ValueError as e:
            return StatusOr.of_status(Status.internal(
                f"malformed JSON from {url}: {e}", transient=True
            ))

        parsed = self.parse_response(body)
        if not parsed.is_ok:
            return parsed
        return self._validate(parsed.value, len(batch))

    def _validate(self, vectors: List[Vector], expected: int) -> StatusOr[List[Vector]]:
        if len(vectors) != expected:
            return StatusOr.of_status(Status.invalid_argument(
                f"provider returned {len(vectors)} vectors for {expected} inputs"
            ))
        dims = self.embedder.dimensionality
        for i, vector in enumerate(vectors):
            if len(vector) != dims:
                return StatusOr.of_status(Status.invalid_argument(
                    f"dimensionality mismatch: vector {i} has {len(vector)} "
                    f"dimensions, embedder declares {dims}"
                ))
        return StatusOr.of_value(vectors)

    def close(self) -> None:
        """Close the HTTP session."""
        if self.session:
            self.session.close()


def _safe_text(response) -> str:
    if 200 <= response.status_code < 300:
        return ""
    try:
        text = response.text
    except (AttributeError, UnicodeDecodeError):
        return ""
    return text if isinstance(text, str) else ""


def read_float_vectors(items: Any, source: str) -> StatusOr[List[Vector]]:
    """Convert a decoded JSON list of number lists into float vectors."""
    if not isinstance(items, list):
        return StatusOr.of_status(Status.internal(
            f"malformed {source} response: expected a list", transient=True
        ))
    vectors: List[Vector] = []
    for item in items:
        if not isinstance(item, list) or not all(
            isinstance(v, (int, float)) and not isinstance(v, bool) for v in item
        ):
            return StatusOr.of_status(Status.internal(
                f"malformed {source} response: vectors must be lists of numbers",
                transient=True,
            ))
        vectors.append([float(v) for v in item])
    return StatusOr.of_value(vectors)
