"""Simple repository API client (PEP 503 HTML and PEP 691 JSON listings)."""
from __future__ import annotations

import html
import json
import logging
from collections import defaultdict
from html.parser import HTMLParser
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urldefrag, urljoin

from packaging.utils import canonicalize_name
from packaging.version import Version

from ..cache import Cache, fetch_with_revalidation
from ..cache.keys import listing_key
from ..cache.http_cache import BODY_FILE
from ..constants import Constants
from ..errors import NotFound
from ..common.logging_utils import extra_context, is_debug_enabled, safe_url, Timer
from .models import ArtifactLink

logger = logging.getLogger(__name__)

_JSON_CONTENT_TYPE = "application/vnd.pypi.simple.v1+json"
_HASH_NAMES = ("sha256", "sha384", "sha512", "md5")


def _fragment_hashes(url: str) -> Tuple[Tuple[str, str], ...]:
    _, fragment = urldefrag(url)
    if "=" not in fragment:
        return ()
    name, value = fragment.split("=", 1)
    return ((name, value),) if name in _HASH_NAMES else ()


def _metadata_attr(value: Optional[str]):
    """Decode a ``data-core-metadata`` attribute value."""
    if value is None or value.lower() == "false":
        return False
    if "=" in value:
        name, digest = value.split("=", 1)
        return ((name, digest),)
    return True


class _LinkCollector(HTMLParser):
    def __init__(self, base_url: str):
        super().__init__(convert_charrefs=True)
        self.base_url = base_url
        self.links: List[ArtifactLink] = []
        self._anchor: Optional[Dict[str, Optional[str]]] = None
        self._text: List[str] = []

    def handle_starttag(self, tag, attrs):
        attributes = dict(attrs)
        if tag == "base" and attributes.get("href"):
            self.base_url = urljoin(self.base_url, attributes["href"])
        elif tag == "a" and attributes.get("href"):
            self._anchor = attributes
            self._text = []

    def handle_data(self, data):
        if self._anchor is not None:
            self._text.append(data)

    def handle_endtag(self, tag):
        if tag != "a" or self._anchor is None:
            return
        attributes, self._anchor = self._anchor, None
        url = urljoin(self.base_url, attributes["href"])
        filename = "".join(self._text).strip() or urldefrag(url)[0].rsplit("/", 1)[-1]
        core_metadata = attributes.get("data-core-metadata", attributes.get("data-dist-info-metadata"))
        requires_python = attributes.get("data-requires-python")
        self.links.append(
            ArtifactLink(
                filename=filename,
                url=url,
                hashes=_fragment_hashes(url),
                requires_python=html.unescape(requires_python) if requires_python else None,
                yanked=(attributes["data-yanked"] or "") if "data-yanked" in attributes else None,
                core_metadata=_metadata_attr(core_metadata),
            )
        )


def parse_simple_html(text: str, base_url: str) -> List[ArtifactLink]:
    """Links from a PEP 503 project page."""
    collector = _LinkCollector(base_url)
    collector.feed(text)
    collector.close()
    return collector.links


def parse_simple_json(data: Dict[str, Any], base_url: str) -> List[ArtifactLink]:
    """Links from a PEP 691 project response."""
    links = []
    for item in data.get("files", []):
        url = urljoin(base_url, item["url"])
        hashes = tuple(sorted((item.get("hashes") or {}).items())) or _fragment_hashes(url)
        yanked = item.get("yanked", False)
        metadata = item.get("core-metadata", item.get("dist-info-metadata", False))
        if isinstance(metadata, dict):
            metadata = tuple(sorted(metadata.items()))
        links.append(
            ArtifactLink(
                filename=item["filename"],
                url=url,
                hashes=hashes,
                requires_python=item.get("requires-python") or None,
                yanked=(yanked if isinstance(yanked, str) else "") if yanked else None,
                core_metadata=metadata or False,
            )
        )
    return links


def group_by_version(package: str, links: Sequence[ArtifactLink]) -> Dict[Version, List[ArtifactLink]]:
    """Bucket artifacts by version, dropping files for other projects or unknown formats."""
    name = canonicalize_name(package)
    grouped: Dict[Version, List[ArtifactLink]] = defaultdict(list)
    for link in links:
        if not (link.is_wheel or link.is_sdist):
            continue
        parsed = link.project_version()
        if parsed is None or parsed[0] != name:
            continue
        grouped[parsed[1]].append(link)
    return dict(grouped)


class SimpleIndex:
    """Reads project listings from an ordered list of indexes.

    The first index that knows a project wins; later indexes are only
    consulted when earlier ones answer 404.
    """

    def __init__(self, client, cache: Cache, index_urls: Sequence[str]):
        self.client = client
        self.cache = cache
        self.index_urls = [url if url.endswith("/") else url + "/" for url in index_urls]

    def project_url(self, index_url: str, package: str) -> str:
        return urljoin(index_url, canonicalize_name(package) + "/")

    async def project_links(self, package: str) -> Tuple[str, List[ArtifactLink]]:
        """Return (index URL, links) for ``package``.

        Raises:
            NotFound: when no index lists the project.
        """
        for index_url in self.index_urls:
            url = self.project_url(index_url, package)
            with Timer() as timer:
                try:
                    entry = await fetch_with_revalidation(
                        self.cache,
                        listing_key(index_url, package),
                        self.client,
                        url,
                        headers={"Accept": Constants.SIMPLE_ACCEPT},
                    )
                except NotFound:
                    logger.debug("%s not found on %s", package, safe_url(index_url))
                    continue
            body = entry.read_bytes(BODY_FILE)
            content_type = (entry.manifest.get("content_type") or "").split(";")[0].strip()
            if content_type == _JSON_CONTENT_TYPE:
                links = parse_simple_json(json.loads(body), url)
            else:
                links = parse_simple_html(body.decode("utf-8", errors="replace"), url)
            if is_debug_enabled(logger):
                logger.debug(
                    "Project listing read",
                    extra=extra_context(
                        event="index_listing",
                        component="simple",
                        target=safe_url(url),
                        count=len(links),
                        duration_ms=timer.duration_ms(),
                    ),
                )
            return index_url, links
        raise NotFound(package, detail=f"not on any index ({', '.join(safe_url(u) for u in self.index_urls)})")
