"""Asynchronous HTTP client used for index pages, metadata files and artifacts.

Encapsulates timeout, retry and authentication handling so the provider and
cache layers avoid duplicating try/except blocks. Transient failures
(timeouts, connection errors, 5xx and 429 responses) are retried with
exponential backoff and random jitter, outside the concurrency bound; once
the budget is exhausted a ``NetworkError`` is raised. Other statuses are
returned to the caller to interpret.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import random
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit, unquote

import aiohttp

from ..constants import Constants
from ..errors import NetworkError, NotFound
from .logging_utils import extra_context, is_debug_enabled, safe_url, Timer

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = frozenset({429, 500, 502, 503, 504})


@dataclass
class HttpResponse:
    """A fully read HTTP response."""

    url: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lower = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lower:
                return value
        return None

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        return json.loads(self.body)


def split_credentials(url: str) -> Tuple[str, Optional[aiohttp.BasicAuth]]:
    """Move userinfo out of a URL into a BasicAuth object."""
    parts = urlsplit(url)
    if parts.username is None:
        return url, None
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    clean = urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment))
    auth = aiohttp.BasicAuth(unquote(parts.username), unquote(parts.password or ""))
    return clean, auth


class NetworkClient:
    """Retrying aiohttp client with per-host credentials and a concurrency bound."""

    def __init__(
        self,
        *,
        timeout: int = Constants.REQUEST_TIMEOUT,
        retries: int = Constants.HTTP_RETRY_MAX,
        base_delay: float = Constants.HTTP_RETRY_BASE_DELAY_SEC,
        max_concurrency: int = Constants.HTTP_MAX_CONCURRENCY,
        credentials: Optional[Dict[str, Tuple[str, str]]] = None,
        offline: bool = False,
    ):
        """Initialize the client.

        Args:
            timeout: Total request timeout in seconds.
            retries: Attempts per request before giving up.
            base_delay: First backoff delay; doubled on every retry, plus up to
                as much again of random jitter.
            max_concurrency: Maximum requests in flight.
            credentials: Mapping of hostname to (username, password).
            offline: Refuse every request with a NetworkError.
        """
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._retries = max(1, retries)
        self._base_delay = base_delay
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._credentials = dict(credentials or {})
        self._session: Optional[aiohttp.ClientSession] = None
        self.offline = offline

    async def start(self) -> None:
        """Start the HTTP session."""
        if self._session is None:
            connector = aiohttp.TCPConnector(limit=Constants.HTTP_MAX_CONCURRENCY * 2)
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                connector=connector,
                headers={"User-Agent": Constants.USER_AGENT},
                trust_env=True,
            )

    async def stop(self) -> None:
        """Stop the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    async def __aenter__(self) -> "NetworkClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    def _prepare(self, url: str) -> Tuple[str, Optional[aiohttp.BasicAuth]]:
        clean, auth = split_credentials(url)
        if auth is None:
            host = urlsplit(clean).hostname or ""
            creds = self._credentials.get(host)
            if creds:
                auth = aiohttp.BasicAuth(creds[0], creds[1])
        return clean, auth

    async def _backoff(self, attempt: int) -> None:
        if attempt + 1 < self._retries:
            delay = self._base_delay * (2 ** attempt)
            await asyncio.sleep(delay + random.uniform(0, delay))

    async def get(self, url: str, *, headers: Optional[Dict[str, str]] = None) -> HttpResponse:
        """GET a URL and read the whole body, retrying transient failures."""
        if self.offline:
            raise NetworkError(safe_url(url), "network access disabled (offline mode)", 0)
        await self.start()
        assert self._session is not None
        target, auth = self._prepare(url)
        safe_target = safe_url(url)
        last_error = "unknown error"

        for attempt in range(self._retries):
            with Timer() as t:
                try:
                    if is_debug_enabled(logger):
                        logger.debug(
                            "HTTP request",
                            extra=extra_context(
                                event="http_request",
                                component="http_client",
                                action="GET",
                                target=safe_target,
                                attempt=attempt + 1,
                            ),
                        )
                    async with self._semaphore:
                        async with self._session.get(target, headers=headers, auth=auth) as response:
                            body = await response.read()
                            result = HttpResponse(
                                url=str(response.url),
                                status=response.status,
                                headers={k: v for k, v in response.headers.items()},
                                body=body,
                            )
                except asyncio.TimeoutError:
                    last_error = "timeout"
                    logger.debug(
                        "HTTP timeout",
                        extra=extra_context(
                            event="http_exception",
                            component="http_client",
                            outcome="timeout",
                            attempt=attempt + 1,
                            target=safe_target,
                        ),
                    )
                    await self._backoff(attempt)
                    continue
                except aiohttp.ClientError as exc:
                    last_error = str(exc) or type(exc).__name__
                    logger.debug(
                        "HTTP request exception",
                        extra=extra_context(
                            event="http_exception",
                            component="http_client",
                            outcome="client_error",
                            attempt=attempt + 1,
                            target=safe_target,
                        ),
                    )
                    await self._backoff(attempt)
                    continue

            if result.status in RETRYABLE_STATUSES:
                last_error = f"HTTP {result.status}"
                logger.warning("Retrying %s after HTTP %s", safe_target, result.status)
                await self._backoff(attempt)
                continue

            if is_debug_enabled(logger):
                logger.debug(
                    "HTTP response",
                    extra=extra_context(
                        event="http_response",
                        component="http_client",
                        action="GET",
                        outcome="success" if result.ok else "handled_non_2xx",
                        status_code=result.status,
                        duration_ms=t.duration_ms(),
                        target=safe_target,
                    ),
                )
            return result

        raise NetworkError(safe_target, last_error, self._retries)

    async def get_json(
        self, url: str, *, headers: Optional[Dict[str, str]] = None
    ) -> Tuple[int, Dict[str, str], Optional[Any]]:
        """GET a URL and parse the body as JSON.

        Returns:
            Tuple of (status_code, headers_dict, parsed_json_or_none)
        """
        response = await self.get(url, headers=headers)
        if response.status == 200 and response.body:
            try:
                return response.status, response.headers, response.json()
            except ValueError:
                logger.debug("JSON decode error for %s", safe_url(url))
        return response.status, response.headers, None

    async def download(self, url: str, dest: Path) -> str:
        """Stream a URL into ``dest`` and return the sha256 hex digest.

        The body lands in a sibling temporary file first and is renamed into
        place only once complete.
        """
        if self.offline:
            raise NetworkError(safe_url(url), "network access disabled (offline mode)", 0)
        await self.start()
        assert self._session is not None
        target, auth = self._prepare(url)
        safe_target = safe_url(url)
        dest.parent.mkdir(parents=True, exist_ok=True)
        last_error = "unknown error"

        for attempt in range(self._retries):
            partial = dest.with_name(f"{dest.name}.{uuid.uuid4().hex}.part")
            digest = hashlib.sha256()
            try:
                async with self._semaphore:
                    async with self._session.get(target, auth=auth) as response:
                        status = response.status
                        if status == 200:
                            with open(partial, "wb") as fh:
                                async for chunk in response.content.iter_chunked(Constants.DOWNLOAD_CHUNK_SIZE):
                                    digest.update(chunk)
                                    fh.write(chunk)
                if status in RETRYABLE_STATUSES:
                    last_error = f"HTTP {status}"
                    logger.warning("Retrying %s after HTTP %s", safe_target, status)
                    await self._backoff(attempt)
                    continue
                if status == 404:
                    raise NotFound(safe_target, detail="HTTP 404")
                if status != 200:
                    raise NetworkError(safe_target, f"HTTP {status}", attempt + 1)
                os.replace(partial, dest)
                logger.debug("Downloaded %s to %s", safe_target, dest)
                return digest.hexdigest()
            except (asyncio.TimeoutError, aiohttp.ClientError) as exc:
                last_error = str(exc) or type(exc).__name__
                await self._backoff(attempt)
            finally:
                if partial.exists():
                    partial.unlink()

        raise NetworkError(safe_target, last_error, self._retries)
