"""
Content fetching for memory content references.
"""

from .fetcher import (
    ContentFetcher,
    FetchedContent,
    HttpFetcher,
    InlineFetcher,
    LocalFileFetcher,
    RoutingFetcher,
    modality_of,
)

__all__ = [
    "ContentFetcher",
    "FetchedContent",
    "HttpFetcher",
    "InlineFetcher",
    "LocalFileFetcher",
    "RoutingFetcher",
    "modality_of",
]
