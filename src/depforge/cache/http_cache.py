"""HTTP responses stored in the cache and revalidated with conditional requests."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from ..errors import NetworkError, NotFound
from ..common.logging_utils import extra_context, safe_url
from .keys import CacheKey
from .store import Cache, CacheEntry, Freshness

logger = logging.getLogger(__name__)

BODY_FILE = "body"


class _NotModified(Exception):
    """Raised inside a producer when the origin answered 304."""


def conditional_headers(entry: Optional[CacheEntry]) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    if entry is None:
        return headers
    if entry.etag:
        headers["If-None-Match"] = entry.etag
    if entry.last_modified:
        headers["If-Modified-Since"] = entry.last_modified
    return headers


async def fetch_with_revalidation(
    cache: Cache,
    key: CacheKey,
    client,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
) -> CacheEntry:
    """Return a cached response body for ``url``, refreshed against the origin.

    An existing entry is revalidated once per session with If-None-Match /
    If-Modified-Since; a 304 keeps it. Stale entries (see ``Refresh``) are
    fetched unconditionally. In offline mode any existing entry is trusted.

    Raises:
        NotFound: on HTTP 404.
        NetworkError: on other failures, or offline with nothing cached.
    """
    entry = cache.get(key)
    if entry is not None:
        if getattr(client, "offline", False):
            return entry
        if cache.is_validated(key) and cache.freshness(entry) is Freshness.FRESH:
            return entry

    conditional = conditional_headers(entry) if cache.freshness(entry) is Freshness.FRESH else {}
    request_headers = dict(headers or {})
    request_headers.update(conditional)

    async def producer(directory: Path):
        response = await client.get(url, headers=request_headers)
        if response.status == 304 and entry is not None:
            raise _NotModified()
        if response.status == 404:
            raise NotFound(key.package or safe_url(url), detail=f"HTTP 404 from {safe_url(url)}")
        if not response.ok:
            raise NetworkError(safe_url(url), f"HTTP {response.status}")
        (directory / BODY_FILE).write_bytes(response.body)
        return {
            "etag": response.header("ETag"),
            "last_modified": response.header("Last-Modified"),
            "content_type": response.header("Content-Type"),
            "origin_url": safe_url(url),
        }

    try:
        result = await cache.put(key, producer, replace=entry is not None)
    except _NotModified:
        logger.debug(
            "Cached response still valid",
            extra=extra_context(event="cache_revalidate", component="cache", outcome="not_modified",
                                target=safe_url(url)),
        )
        cache.mark_validated(key)
        return entry
    cache.mark_validated(key)
    return result
