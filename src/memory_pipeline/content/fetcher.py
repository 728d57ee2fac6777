"""
Content Fetcher - resolve a memory's content reference to raw bytes.

Supported references:
- file:///abs/path or a plain path (resolved under an optional root)
- http:// and https:// URLs (fetched with requests)
- inline:<text> or inline;base64,<data> for small payloads

Fetch errors follow the pipeline's transient/permanent classification:
a missing object is permanent, an unreachable server is transient.
"""

import base64
import binascii
import logging
import mimetypes
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional
from urllib.parse import unquote, urlparse

import requests

from ..contracts.models import Modality
from ..core.logging import LoggerLike
from ..core.status import Status, StatusOr
from ..providers.base import classify_http_status


@dataclass
class FetchedContent:
    """Raw bytes and their content type."""
    data: bytes
    content_type: Optional[str] = None


class ContentFetcher(ABC):
    """Abstract base class for content fetchers."""

    @abstractmethod
    def fetch(self, content_ref: str) -> StatusOr[FetchedContent]:
        """
        Resolve a content reference.

        Args:
            content_ref: Reference stored on the memory

        Returns:
            The content, NOT_FOUND if it does not exist, or a transient
            error if the backing store could not be reached
        """
        pass


class LocalFileFetcher(ContentFetcher):
    """Reads files from local disk, optionally confined to a root directory."""

    def __init__(self, root: Optional[Path] = None, logger: Optional[LoggerLike] = None):
        self.root = Path(root).resolve() if root else None
        self.logger = logger or logging.getLogger(__name__)

    def _resolve(self, content_ref: str) -> Optional[Path]:
        if content_ref.startswith("file://"):
            path = Path(unquote(urlparse(content_ref).path))
        else:
            path = Path(content_ref)
        if self.root is not None:
            path = (self.root / path).resolve() if not path.is_absolute() else path.resolve()
            if self.root not in path.parents and path != self.root:
                return None
        return path

    def fetch(self, content_ref: str) -> StatusOr[FetchedContent]:
        path = self._resolve(content_ref)
        if path is None:
            return StatusOr.of_status(Status.invalid_argument(
                f"content reference '{content_ref}' is outside the content root"
            ))
        if not path.is_file():
            return StatusOr.of_status(Status.not_found(f"content '{content_ref}' not found"))
        try:
            data = path.read_bytes()
        except OSError as e:
            return StatusOr.of_status(Status.internal(
                f"failed to read '{content_ref}': {e}", transient=True
            ))
        content_type, _ = mimetypes.guess_type(path.name)
        return StatusOr.of_value(FetchedContent(data=data, content_type=content_type))


class HttpFetcher(ContentFetcher):
    """Downloads content over HTTP(S)."""

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        session: Optional[requests.Session] = None,
        logger: Optional[LoggerLike] = None,
    ):
        self.timeout_seconds = timeout_seconds
        self.session = session or requests.Session()
        self.logger = logger or logging.getLogger(__name__)

    def fetch(self, content_ref: str) -> StatusOr[FetchedContent]:
        try:
            response = self.session.get(content_ref, timeout=self.timeout_seconds)
        except requests.exceptions.Timeout as e:
            return StatusOr.of_status(Status.deadline_exceeded(
                f"timed out fetching '{content_ref}': {e}"
            ))
        except requests.exceptions.RequestException as e:
            return StatusOr.of_status(Status.internal(
                f"failed to fetch '{content_ref}': {e}", transient=True
            ))

        if response.status_code == 404:
            return StatusOr.of_status(Status.not_found(f"content '{content_ref}' not found"))
        status = classify_http_status(response.status_code, response.headers)
        if not status.is_ok:
            return StatusOr.of_status(status.with_message(f"fetching '{content_ref}'"))

        return StatusOr.of_value(FetchedContent(
            data=response.content,
            content_type=response.headers.get("Content-Type"),
        ))

    def close(self) -> None:
        self.session.close()


class InlineFetcher(ContentFetcher):
    """
    Decodes content carried in the reference itself.

    "inline:hello" is UTF-8 text; "inline;base64,aGVsbG8=" is base64 data.
    """

    def fetch(self, content_ref: str) -> StatusOr[FetchedContent]:
        if content_ref.startswith("inline;base64,"):
            try:
                data = base64.b64decode(content_ref[len("inline;base64,"):], validate=True)
            except (binascii.Error, ValueError) as e:
                return StatusOr.of_status(Status.invalid_argument(
                    f"invalid base64 inline content: {e}"
                ))
            return StatusOr.of_value(FetchedContent(data=data))
        if content_ref.startswith("inline:"):
            return StatusOr.of_value(FetchedContent(
                data=content_ref[len("inline:"):].encode("utf-8"),
                content_type="text/plain; charset=utf-8",
            ))
        return StatusOr.of_status(Status.invalid_argument(
            f"not an inline content reference: '{content_ref[:32]}'"
        ))


class RoutingFetcher(ContentFetcher):
    """Dispatches to a fetcher by the reference's scheme."""

    def __init__(
        self,
        fetchers: Optional[Dict[str, ContentFetcher]] = None,
        default: Optional[ContentFetcher] = None,
    ):
        http = HttpFetcher()
        self.fetchers = fetchers if fetchers is not None else {
            "http": http,
            "https": http,
            "file": LocalFileFetcher(),
            "inline": InlineFetcher(),
        }
        self.default = default if default is not None else self.fetchers.get("file")

    @staticmethod
    def scheme_of(content_ref: str) -> str:
        if content_ref.startswith("inline:") or content_ref.startswith("inline;"):
            return "inline"
        scheme = urlparse(content_ref).scheme.lower()
        # Single letters are Windows drive letters, not schemes.
        return scheme if len(scheme) > 1 else ""

    def fetch(self, content_ref: str) -> StatusOr[FetchedContent]:
        if not content_ref:
            return StatusOr.of_status(Status.invalid_argument("content reference is empty"))
        scheme = self.scheme_of(content_ref)
        fetcher = self.fetchers.get(scheme) if scheme else self.default
        if fetcher is None:
            return StatusOr.of_status(Status.invalid_argument(
                f"unsupported content reference scheme '{scheme}'"
            ))
        return fetcher.fetch(content_ref)


_TEXT_LIKE_APPLICATION_TYPES = {
    "application/json",
    "application/xml",
    "application/x-yaml",
    "application/yaml",
    "application/javascript",
    "application/x-ndjson",
    "application/csv",
}


def modality_of(content_type: Optional[str]) -> Optional[Modality]:
    """
    Route a MIME type to a modality.

    A missing type is treated as text. Any other type that is not text-like
    or image/audio/video (e.g. application/pdf) returns None and cannot
    be routed.
    """
    if not content_type:
        return Modality.TEXT
    mime = content_type.split(";")[0].strip().lower()
    major = mime.split("/")[0]
    if major == "text" or mime in _TEXT_LIKE_APPLICATION_TYPES or mime.endswith("+json") \
            or mime.endswith("+xml"):
        return Modality.TEXT
    if major == "image":
        return Modality.IMAGE
    if major == "audio":
        return Modality.AUDIO
    if major == "video":
        return Modality.VIDEO
    return None
