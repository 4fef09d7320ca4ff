"""Reading, verifying and unpacking wheel archives."""
from __future__ import annotations

import os
import posixpath
import zipfile
from pathlib import Path
from typing import Dict, List, Tuple

from packaging.utils import InvalidWheelFilename, canonicalize_name, parse_wheel_filename

from ..errors import InstallFailure
from .records import RECORD, hash_bytes, parse_record

_UNHASHED = {RECORD, "RECORD.jws", "RECORD.p7s"}


class WheelFile:
    """An open wheel archive; use as a context manager or call ``close``."""

    def __init__(self, path: Path):
        self.path = Path(path)
        try:
            name, version, _, _ = parse_wheel_filename(self.path.name)
        except InvalidWheelFilename as exc:
            raise InstallFailure(self.path.name, str(exc)) from exc
        self.name = canonicalize_name(name)
        self.version = version
        try:
            self._zip = zipfile.ZipFile(self.path)
        except (OSError, zipfile.BadZipFile) as exc:
            raise InstallFailure(self.name, f"cannot open {self.path.name}: {exc}") from exc
        self.dist_info = self._find_dist_info()

    def __enter__(self) -> "WheelFile":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        self._zip.close()

    def _find_dist_info(self) -> str:
        candidates = {
            name.split("/", 1)[0]
            for name in self._zip.namelist()
            if name.split("/", 1)[0].endswith(".dist-info")
        }
        for candidate in sorted(candidates):
            project = candidate[: -len(".dist-info")].rsplit("-", 1)[0]
            if canonicalize_name(project) == self.name:
                return candidate
        raise InstallFailure(self.name, f"{self.path.name} has no .dist-info directory for {self.name}")

    @property
    def data_dir(self) -> str:
        return self.dist_info[: -len(".dist-info")] + ".data"

    def read(self, member: str) -> bytes:
        return self._zip.read(member)

    def verify(self) -> None:
        """Check every member against the wheel's own ``RECORD``.

        Raises:
            InstallFailure: when ``RECORD`` is missing, a member is absent or a hash differs.
        """
        try:
            record = self.read(f"{self.dist_info}/{RECORD}").decode("utf-8")
        except KeyError as exc:
            raise InstallFailure(self.name, f"{self.path.name} has no {RECORD}") from exc
        recorded = {entry.path: entry for entry in parse_record(record)}
        members = {info.filename for info in self._zip.infolist() if not info.is_dir()}
        for member in sorted(members):
            if posixpath.basename(member) in _UNHASHED and posixpath.dirname(member) == self.dist_info:
                continue
            entry = recorded.get(member)
            if entry is None:
                raise InstallFailure(self.name, f"{member} is not listed in {RECORD}")
            if entry.hash is None:
                continue
            if not entry.hash.startswith("sha256="):
                continue
            if hash_bytes(self.read(member)) != entry.hash:
                raise InstallFailure(self.name, f"hash mismatch for {member} in {self.path.name}")
        for path in recorded:
            if path not in members and posixpath.basename(path) not in _UNHASHED:
                raise InstallFailure(self.name, f"{path} is listed in {RECORD} but missing from the wheel")

    def _destination(self, member: str, scheme: Dict[str, Path], root: Path) -> Path:
        if member.startswith(self.data_dir + "/"):
            _, key, rest = member.split("/", 2)
            if key not in scheme:
                raise InstallFailure(self.name, f"unknown data directory {key!r} in {self.path.name}")
            base = scheme[key]
        else:
            base, rest = scheme["purelib"], member
        target = (base / rest).resolve()
        if target != root and root not in target.parents:
            raise InstallFailure(self.name, f"{member} would be installed outside the environment")
        return target

    def extract(self, staging: Path, scheme: Dict[str, Path], root: Path) -> List[Tuple[Path, str]]:
        """Unpack into ``staging`` using the layout of ``scheme`` relative to ``root``.

        Returns ``(staged file, path relative to root)`` pairs. ``RECORD``
        signature files are dropped; ``RECORD`` itself is rewritten by the
        installer.
        """
        root = root.resolve()
        staged: List[Tuple[Path, str]] = []
        for info in self._zip.infolist():
            if info.is_dir():
                continue
            member = info.filename
            if posixpath.dirname(member) == self.dist_info and posixpath.basename(member) in _UNHASHED:
                continue
            relative = self._destination(member, scheme, root).relative_to(root).as_posix()
            out = staging / relative
            out.parent.mkdir(parents=True, exist_ok=True)
            with self._zip.open(info) as src, open(out, "wb") as dst:
                while True:
                    chunk = src.read(1024 * 1024)
                    if not chunk:
                        break
                    dst.write(chunk)
            mode = (info.external_attr >> 16) & 0o777
            if mode & 0o111:
                os.chmod(out, 0o755)
            staged.append((out, relative))
        return staged
