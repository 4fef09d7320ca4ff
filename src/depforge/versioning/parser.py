"""Requirement parsing: PEP 508 strings, direct references and requirements files.

``parse`` never partially parses: any malformed input raises ``ParseError``.
"""
from __future__ import annotations

import logging
import os
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Set, Tuple
from urllib.parse import parse_qs, unquote, urlsplit, urlunsplit

import requirements
from packaging.markers import InvalidMarker, Marker
from packaging.requirements import InvalidRequirement, Requirement as PackagingRequirement
from packaging.specifiers import InvalidSpecifier, SpecifierSet
from packaging.utils import canonicalize_name

from ..errors import ParseError
from .models import DirectUrlSource, PathSource, Requirement, SourceSpec, VcsSource

logger = logging.getLogger(__name__)

VCS_SCHEMES = ("git", "hg", "svn", "bzr")
_COMMENT_RE = re.compile(r"(^|\s+)#.*$")
_HASH_NAMES = ("sha256", "sha384", "sha512", "md5")


def normalize_name(name: str) -> str:
    """PEP 503 normalization."""
    return canonicalize_name(name)


def _looks_like_path(text: str) -> bool:
    return text.startswith((".", "/", "~")) or text.startswith("file:")


def _looks_like_vcs(text: str) -> bool:
    return any(text.startswith(f"{vcs}+") for vcs in VCS_SCHEMES)


def _fragment_params(fragment: str) -> dict:
    return {k: v[0] for k, v in parse_qs(fragment).items() if v}


def source_from_url(url: str, base_dir: Optional[str] = None) -> Tuple[SourceSpec, Optional[str]]:
    """Classify a URL or path into a source variant.

    Returns:
        Tuple of (source, egg name from the fragment or None)
    """
    text = url.strip()
    if _looks_like_vcs(text):
        vcs, rest = text.split("+", 1)
        parts = urlsplit(rest)
        params = _fragment_params(parts.fragment)
        path = parts.path
        rev = None
        if "@" in path:
            path, rev = path.rsplit("@", 1)
            rev = rev or None
        clean = urlunsplit((parts.scheme, parts.netloc, path, "", ""))
        if not parts.scheme or not parts.netloc and parts.scheme != "file":
            raise ParseError(url, "VCS reference needs an absolute URL")
        return VcsSource(vcs=vcs, url=clean, rev=rev, subdirectory=params.get("subdirectory")), params.get("egg")

    if text.startswith("file:"):
        parts = urlsplit(text)
        params = _fragment_params(parts.fragment)
        return PathSource(path=unquote(parts.path)), params.get("egg")

    if _looks_like_path(text):
        path, _, fragment = text.partition("#")
        path = os.path.expanduser(path)
        if base_dir and not os.path.isabs(path):
            path = os.path.normpath(os.path.join(base_dir, path))
        return PathSource(path=path), _fragment_params(fragment).get("egg")

    parts = urlsplit(text)
    if parts.scheme in ("http", "https"):
        params = _fragment_params(parts.fragment)
        hashes = tuple((name, params[name]) for name in _HASH_NAMES if name in params)
        clean = urlunsplit((parts.scheme, parts.netloc, parts.path, parts.query, ""))
        return DirectUrlSource(url=clean, hashes=hashes), params.get("egg")

    raise ParseError(url, f"unsupported URL scheme {parts.scheme or '(none)'!r}")


def parse(text: str, base_dir: Optional[str] = None) -> Requirement:
    """Parse a single requirement.

    Accepts PEP 508 strings (``name[extra]>=1.0; python_version < "3.12"``),
    direct references (``name @ https://...``), and bare VCS URLs or local
    paths, whose name comes from ``#egg=`` or is left empty for later
    discovery from metadata.

    Raises:
        ParseError: if any part of ``text`` is malformed.
    """
    if text is None or not text.strip():
        raise ParseError(text or "", "empty requirement")
    text = text.strip()

    if _looks_like_vcs(text) or _looks_like_path(text):
        location, marker = text, None
        if ";" in text and " ;" in text:
            location, _, marker_text = text.partition(" ;")
            try:
                marker = Marker(marker_text.strip())
            except InvalidMarker as exc:
                raise ParseError(text, str(exc)) from exc
        source, egg = source_from_url(location, base_dir)
        name, extras = "", frozenset()
        if egg:
            name, extras = _split_egg(text, egg)
        return Requirement(name=name, extras=extras, marker=marker, source=source)

    try:
        parsed = PackagingRequirement(text)
    except InvalidRequirement as exc:
        raise ParseError(text, str(exc)) from exc

    source = None
    if parsed.url:
        source, _ = source_from_url(parsed.url, base_dir)
    return Requirement(
        name=parsed.name,
        specifier=parsed.specifier,
        extras=frozenset(parsed.extras),
        marker=parsed.marker,
        source=source,
    )


def _split_egg(text: str, egg: str) -> Tuple[str, frozenset]:
    match = re.fullmatch(r"([A-Za-z0-9][A-Za-z0-9._-]*)(?:\[([^\]]*)\])?", egg)
    if not match:
        raise ParseError(text, f"invalid egg fragment {egg!r}")
    extras = frozenset(e.strip() for e in (match.group(2) or "").split(",") if e.strip())
    return match.group(1), extras


def parse_specifier(text: str) -> SpecifierSet:
    """Parse a bare version specifier such as ``>=1.0,<2``."""
    try:
        return SpecifierSet(text or "")
    except InvalidSpecifier as exc:
        raise ParseError(text, str(exc)) from exc


@dataclass
class RequirementsFile:
    """Everything collected from a requirements file and the files it includes."""
    requirements: List[Requirement] = field(default_factory=list)
    constraints: List[Requirement] = field(default_factory=list)
    index_url: Optional[str] = None
    extra_index_urls: List[str] = field(default_factory=list)


def _logical_lines(body: str):
    """Yield (line_number, text) with continuations joined and comments removed."""
    buffer = ""
    start = None
    for number, raw in enumerate(body.splitlines(), start=1):
        if start is None:
            start = number
        line = raw.rstrip()
        if line.endswith("\\"):
            buffer += line[:-1] + " "
            continue
        buffer += line
        text = _COMMENT_RE.sub("", buffer).strip()
        if text:
            yield start, text
        buffer = ""
        start = None
    if buffer.strip():
        yield start, _COMMENT_RE.sub("", buffer).strip()


def _parse_vcs_line(line: str, base_dir: str) -> Requirement:
    """Parse VCS and editable lines with requirements-parser."""
    parsed = list(requirements.parse(line))
    if not parsed:
        raise ParseError(line, "not a requirement")
    req = parsed[0]
    vcs = getattr(req, "vcs", None)
    uri = getattr(req, "uri", None)
    name = getattr(req, "name", None) or ""
    extras = frozenset(getattr(req, "extras", None) or ())
    if vcs and uri:
        url = uri.split("+", 1)[1] if "+" in uri.split("://", 1)[0] else uri
        source = VcsSource(
            vcs=vcs,
            url=url,
            rev=getattr(req, "revision", None),
            subdirectory=getattr(req, "subdirectory", None),
        )
        return Requirement(name=name, extras=extras, source=source)
    if getattr(req, "local_file", False) and getattr(req, "path", None):
        path = req.path
        if not os.path.isabs(path):
            path = os.path.normpath(os.path.join(base_dir, path))
        return Requirement(name=name, extras=extras, source=PathSource(path=path, editable=True))
    raise ParseError(line, "unsupported editable or VCS requirement")


def _option_value(tokens: List[str], line: str) -> str:
    option = tokens[0]
    if "=" in option and option.startswith("--"):
        return option.split("=", 1)[1]
    if len(tokens) < 2:
        raise ParseError(line, f"option {option} needs a value")
    return tokens[1]


def parse_requirements_file(path: str, _seen: Optional[Set[str]] = None, constraint: bool = False) -> RequirementsFile:
    """Parse a requirements file, following ``-r`` and ``-c`` includes.

    Raises:
        ParseError: on malformed lines or include cycles.
        OSError: when the file cannot be read.
    """
    path = os.path.abspath(path)
    seen = _seen if _seen is not None else set()
    if path in seen:
        raise ParseError(path, "requirements file includes itself")
    seen.add(path)
    base_dir = os.path.dirname(path)
    result = RequirementsFile()

    body = Path(path).read_text(encoding="utf-8")
    for number, line in _logical_lines(body):
        location = f"{path}:{number}"
        if line.startswith("-"):
            tokens = shlex.split(line)
            option = tokens[0].split("=", 1)[0]
            if option in ("-r", "--requirement", "-c", "--constraint"):
                include = _option_value(tokens, line)
                if not os.path.isabs(include):
                    include = os.path.join(base_dir, include)
                nested = parse_requirements_file(
                    include, seen, constraint or option in ("-c", "--constraint")
                )
                result.requirements.extend(nested.requirements)
                result.constraints.extend(nested.constraints)
                result.index_url = result.index_url or nested.index_url
                result.extra_index_urls.extend(nested.extra_index_urls)
            elif option in ("-i", "--index-url"):
                result.index_url = _option_value(tokens, line)
            elif option == "--extra-index-url":
                result.extra_index_urls.append(_option_value(tokens, line))
            elif option in ("-e", "--editable"):
                target = _option_value(tokens, line)
                if _looks_like_vcs(target):
                    req = _parse_vcs_line(f"-e {target}", base_dir)
                else:
                    req = parse(target, base_dir)
                    req = Requirement(req.name, req.specifier, req.extras, req.marker,
                                      PathSource(path=req.source.path, editable=True)
                                      if isinstance(req.source, PathSource) else req.source)
                (result.constraints if constraint else result.requirements).append(req)
            else:
                logger.warning("Ignoring unsupported option at %s: %s", location, tokens[0])
            continue

        line = re.sub(r"\s--hash[= ]\S+", "", line)
        try:
            if _looks_like_vcs(line):
                req = _parse_vcs_line(line, base_dir)
            else:
                req = parse(line, base_dir)
        except ParseError as exc:
            raise ParseError(line, f"{exc.reason} ({location})") from exc
        (result.constraints if constraint else result.requirements).append(req)

    return result
