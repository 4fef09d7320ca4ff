"""Installed-distribution records: ``RECORD``, ``INSTALLER`` and ``direct_url.json``."""
from __future__ import annotations

import base64
import csv
import hashlib
import io
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from packaging.utils import canonicalize_name
from packaging.version import InvalidVersion, Version

from ..errors import InstallFailure, MetadataUnavailable
from ..registry.models import parse_core_metadata
from ..versioning.models import DirectUrlSource, PathSource, SourceSpec, VcsSource

RECORD = "RECORD"
INSTALLER = "INSTALLER"
DIRECT_URL = "direct_url.json"
REQUESTED = "REQUESTED"


@dataclass(frozen=True)
class RecordEntry:
    path: str
    hash: Optional[str] = None
    size: Optional[int] = None


def hash_file(path: Path) -> Tuple[str, int]:
    """``sha256=<urlsafe-b64>`` digest and size, as written in ``RECORD``."""
    sha = hashlib.sha256()
    size = 0
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            sha.update(chunk)
            size += len(chunk)
    return "sha256=" + base64.urlsafe_b64encode(sha.digest()).decode("ascii").rstrip("="), size


def hash_bytes(data: bytes) -> str:
    return "sha256=" + base64.urlsafe_b64encode(hashlib.sha256(data).digest()).decode("ascii").rstrip("=")


def parse_record(text: str) -> List[RecordEntry]:
    entries = []
    for row in csv.reader(io.StringIO(text)):
        if not row or not row[0]:
            continue
        digest = row[1] if len(row) > 1 and row[1] else None
        size = int(row[2]) if len(row) > 2 and row[2] else None
        entries.append(RecordEntry(row[0], digest, size))
    return entries


def format_record(entries: Iterable[RecordEntry]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    for entry in entries:
        writer.writerow([entry.path, entry.hash or "", "" if entry.size is None else entry.size])
    return buffer.getvalue()


def direct_url(source: Optional[SourceSpec], sha256: Optional[str] = None) -> Optional[dict]:
    """PEP 610 document for non-registry sources."""
    if isinstance(source, DirectUrlSource):
        info: Dict[str, dict] = {}
        hashes = dict(source.hashes)
        if sha256:
            hashes.setdefault("sha256", sha256)
        if hashes:
            info["hashes"] = hashes
        return {"url": source.url, "archive_info": info}
    if isinstance(source, VcsSource):
        vcs_info = {"vcs": source.vcs}
        if source.rev:
            vcs_info["commit_id"] = source.rev
        document = {"url": source.url, "vcs_info": vcs_info}
        if source.subdirectory:
            document["subdirectory"] = source.subdirectory
        return document
    if isinstance(source, PathSource):
        url = Path(source.path).resolve().as_uri()
        if Path(source.path).is_dir():
            return {"url": url, "dir_info": {"editable": True} if source.editable else {}}
        return {"url": url, "archive_info": {}}
    return None


@dataclass
class InstalledRecord:
    """What one distribution put into an environment."""

    name: str
    version: Version
    dist_info: Path
    root: Path
    entries: List[RecordEntry] = field(default_factory=list)
    installer: Optional[str] = None
    direct_url: Optional[dict] = None

    @classmethod
    def load(cls, dist_info: Path, root: Path) -> "InstalledRecord":
        dist_info = Path(dist_info)
        try:
            metadata = parse_core_metadata((dist_info / "METADATA").read_bytes())
            name, version = metadata.name, metadata.version
        except (OSError, MetadataUnavailable):
            stem = dist_info.name[: -len(".dist-info")]
            project, _, raw_version = stem.rpartition("-")
            try:
                name, version = canonicalize_name(project), Version(raw_version)
            except InvalidVersion as exc:
                raise InstallFailure(stem, f"unreadable installation record: {exc}") from exc
        record_path = dist_info / RECORD
        entries = parse_record(record_path.read_text(encoding="utf-8")) if record_path.is_file() else []
        installer_path = dist_info / INSTALLER
        installer = installer_path.read_text(encoding="utf-8").strip() if installer_path.is_file() else None
        direct_path = dist_info / DIRECT_URL
        document = None
        if direct_path.is_file():
            try:
                document = json.loads(direct_path.read_text(encoding="utf-8"))
            except ValueError:
                document = None
        return cls(canonicalize_name(name), version, dist_info, Path(root), entries, installer, document)

    def files(self) -> List[Path]:
        return [self.root / entry.path for entry in self.entries]

    def verify(self) -> List[str]:
        """Problems with the installed files; empty when everything matches ``RECORD``."""
        problems = []
        if not self.entries:
            problems.append(f"{self.dist_info.name}: missing {RECORD}")
        for entry in self.entries:
            path = self.root / entry.path
            if not path.is_file():
                problems.append(f"{entry.path}: missing")
                continue
            if entry.hash is None:
                continue
            if not entry.hash.startswith("sha256="):
                problems.append(f"{entry.path}: unsupported hash {entry.hash.split('=', 1)[0]}")
                continue
            digest, size = hash_file(path)
            if digest != entry.hash:
                problems.append(f"{entry.path}: hash mismatch")
            elif entry.size is not None and size != entry.size:
                problems.append(f"{entry.path}: size mismatch")
        return problems

    def matches_source(self, source: Optional[SourceSpec]) -> bool:
        expected = direct_url(source)
        if expected is None:
            return self.direct_url is None
        if self.direct_url is None:
            return False
        return expected.get("url") == self.direct_url.get("url") and (
            expected.get("vcs_info", {}).get("commit_id") == self.direct_url.get("vcs_info", {}).get("commit_id")
        )

    def __str__(self) -> str:
        return f"{self.name}=={self.version}"
