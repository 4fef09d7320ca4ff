"""Installing resolved graphs into a target environment.

Each package is installed atomically: its files are unpacked into a staging
directory inside the target (same filesystem), the previous installation
of the same name is moved aside, and staged files are renamed into place.
A file already present at a staged path is moved aside too. A failure while
linking removes whatever was linked, puts everything moved aside back and
discards the staging directory. Packages installed
earlier in the same batch are kept.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Tuple

from packaging.utils import canonicalize_name

from ..cache.keys import file_sha256
from ..cache.locking import FileLock
from ..common.logging_utils import Timer, extra_context, is_debug_enabled
from ..constants import Constants
from ..errors import DepforgeError, InstallFailure
from ..registry.provider import retrieve_exception
from ..resolver.graph import Node, ResolutionGraph
from ..versioning.models import DirectUrlSource, RegistrySource, SourceSpec
from .environment import TargetEnvironment
from .records import (
    DIRECT_URL,
    INSTALLER,
    RECORD,
    REQUESTED,
    InstalledRecord,
    RecordEntry,
    direct_url,
    format_record,
    hash_file,
)
from .wheel import WheelFile

logger = logging.getLogger(__name__)


@dataclass
class InstallReport:
    """Outcome of ``Installer.install``."""

    installed: List[InstalledRecord] = field(default_factory=list)
    skipped: List[InstalledRecord] = field(default_factory=list)

    @property
    def records(self) -> List[InstalledRecord]:
        return sorted(self.installed + self.skipped, key=lambda r: r.name)


class _Backup:
    """Files moved out of the way of an install (the previous installation and any
    file it would overwrite), restorable."""

    def __init__(self, directory: Path):
        self.directory = directory
        self.moved: List[Tuple[Path, Path]] = []

    def take(self, record: InstalledRecord) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        paths = [p for p in record.files() if p.is_file() or p.is_symlink()]
        for index, path in enumerate(paths):
            holding = self.directory / f"{index:06d}"
            os.replace(path, holding)
            self.moved.append((holding, path))
        if record.dist_info.is_dir():
            holding = self.directory / "dist-info"
            os.replace(record.dist_info, holding)
            self.moved.append((holding, record.dist_info))

    def displace(self, path: Path) -> None:
        """Move aside a file that another distribution or the user put at ``path``."""
        self.directory.mkdir(parents=True, exist_ok=True)
        holding = self.directory / f"displaced-{len(self.moved):06d}"
        os.replace(path, holding)
        self.moved.append((holding, path))

    def restore(self) -> None:
        while self.moved:
            holding, original = self.moved.pop()
            original.parent.mkdir(parents=True, exist_ok=True)
            if original.is_dir() and not original.is_symlink():
                shutil.rmtree(original)
            os.replace(holding, original)

    def originals(self) -> List[Path]:
        return [original for _, original in self.moved]


class Installer:
    """Writes resolved distributions into a ``TargetEnvironment``.

    Installs into one target are serialised: in-process through an
    ``asyncio.Lock`` per target root, across processes through an advisory
    lock file in the target.
    """

    def __init__(self, provider, *, lock_timeout: float = Constants.CACHE_LOCK_TIMEOUT_SEC):
        self.provider = provider
        self.lock_timeout = lock_timeout
        self._locks: Dict[Path, asyncio.Lock] = {}

    def _lock(self, target: TargetEnvironment) -> asyncio.Lock:
        lock = self._locks.get(target.root)
        if lock is None:
            lock = self._locks[target.root] = asyncio.Lock()
        return lock

    async def _exclusive(self, target: TargetEnvironment, body):
        target.ensure()
        async with self._lock(target):
            file_lock = FileLock(target.lock_path, timeout=self.lock_timeout)
            async with file_lock.hold(f"installing into {target.root}"):
                return body()

    def installed(self, target: TargetEnvironment) -> List[InstalledRecord]:
        records = []
        for dist_info in target.dist_info_dirs():
            try:
                records.append(InstalledRecord.load(dist_info, target.root))
            except InstallFailure as exc:
                logger.warning("Skipping unreadable installation %s: %s", dist_info.name, exc)
        return records

    def record(self, target: TargetEnvironment, name: str) -> Optional[InstalledRecord]:
        dist_info = target.find(name)
        if dist_info is None:
            return None
        return InstalledRecord.load(dist_info, target.root)

    def _up_to_date(self, target: TargetEnvironment, node: Node) -> Optional[InstalledRecord]:
        current = self.record(target, node.name)
        if current is None or current.version != node.version:
            return None
        source = None if isinstance(node.source, RegistrySource) else node.source
        if not current.matches_source(source):
            return None
        return current

    async def install(
        self,
        graph: ResolutionGraph,
        target: TargetEnvironment,
        *,
        requested: Iterable[str] = (),
    ) -> InstallReport:
        """Install every node of ``graph`` into ``target``.

        Wheels are fetched (or built) concurrently; installation then
        proceeds in dependency order under the environment lock.
        Distributions already installed at the selected version from the
        same source are left alone.

        Raises:
            InstallFailure: when a package cannot be written; packages
                installed before it in this call stay installed.
        """
        requested_names = {canonicalize_name(name) for name in requested}
        report = InstallReport()
        order = graph.install_order()
        pending: List[Node] = []
        for node in order:
            current = self._up_to_date(target, node)
            if current is not None:
                report.skipped.append(current)
            else:
                pending.append(node)
        if not pending:
            logger.info("Nothing to install; %d package(s) already satisfied", len(report.skipped))
            return report

        with Timer() as timer:
            wheels = await self._fetch_all(pending)

        def body() -> None:
            for node in pending:
                source = None if isinstance(node.source, RegistrySource) else node.source
                report.installed.append(
                    self.install_wheel(
                        wheels[node.name],
                        target,
                        source=source,
                        requested=node.name in requested_names,
                    )
                )

        await self._exclusive(target, body)
        logger.info(
            "Installed %d package(s), %d already satisfied",
            len(report.installed),
            len(report.skipped),
            extra=extra_context(
                event="install_complete",
                component="installer",
                outcome="success",
                count=len(report.installed),
                fetch_ms=timer.duration_ms(),
            ),
        )
        return report

    async def _fetch_all(self, nodes: List[Node]) -> Dict[str, Path]:
        tasks = {}
        for node in nodes:
            if node.candidate is None:
                raise InstallFailure(node.name, "no distribution is attached to the resolved node")
            task = asyncio.ensure_future(self.provider.fetch_wheel(node.candidate))
            task.add_done_callback(retrieve_exception)
            tasks[node.name] = task
        try:
            await asyncio.gather(*tasks.values())
        except BaseException:
            for task in tasks.values():
                task.cancel()
            raise
        return {name: Path(task.result()) for name, task in tasks.items()}

    def install_wheel(
        self,
        wheel_path: Path,
        target: TargetEnvironment,
        *,
        source: Optional[SourceSpec] = None,
        requested: bool = False,
    ) -> InstalledRecord:
        """Install one wheel file atomically, replacing any previous installation.

        The caller must hold the environment lock (``install`` does).
        """
        target.ensure()
        with WheelFile(wheel_path) as wheel:
            wheel.verify()
            sha256 = file_sha256(Path(wheel_path))
            if isinstance(source, DirectUrlSource):
                expected = dict(source.hashes).get("sha256")
                if expected and expected != sha256:
                    raise InstallFailure(wheel.name, f"hash mismatch for {Path(wheel_path).name}")
            staging = Path(tempfile.mkdtemp(prefix=f"{wheel.name}-", dir=target.staging_root))
            backup = _Backup(target.staging_root / f"{uuid.uuid4().hex}-backup")
            try:
                staged = wheel.extract(staging, target.scheme(wheel.name), target.root)
                staged.extend(self._write_metadata(wheel, staging, source, sha256, requested))
                previous = self.record(target, wheel.name)
                try:
                    if previous is not None:
                        logger.info("Replacing %s", previous)
                        backup.take(previous)
                    self._link(staged, target.root, backup)
                except BaseException:
                    backup.restore()
                    raise
                leftovers = backup.originals()
            except (OSError, DepforgeError) as exc:
                logger.error(
                    "Failed to install %s: %s",
                    wheel.name,
                    exc,
                    extra=extra_context(event="install_package", component="installer", outcome="failure", target=wheel.name),
                )
                if isinstance(exc, InstallFailure):
                    raise
                raise InstallFailure(wheel.name, str(exc)) from exc
            finally:
                shutil.rmtree(staging, ignore_errors=True)
                shutil.rmtree(backup.directory, ignore_errors=True)
            _remove_empty_parents(leftovers, target.root)
            record = InstalledRecord.load(target.root / wheel.dist_info, target.root)
        logger.info(
            "Installed %s",
            record,
            extra=extra_context(event="install_package", component="installer", outcome="success", target=record.name),
        )
        return record

    def _write_metadata(
        self,
        wheel: WheelFile,
        staging: Path,
        source: Optional[SourceSpec],
        sha256: str,
        requested: bool,
    ) -> List[Tuple[Path, str]]:
        dist_info = staging / wheel.dist_info
        dist_info.mkdir(parents=True, exist_ok=True)
        written = []
        (dist_info / INSTALLER).write_text(Constants.INSTALLER_NAME + "\n", encoding="utf-8")
        written.append(INSTALLER)
        if requested:
            (dist_info / REQUESTED).write_text("", encoding="utf-8")
            written.append(REQUESTED)
        document = direct_url(source, sha256=sha256 if isinstance(source, DirectUrlSource) else None)
        if document is not None:
            (dist_info / DIRECT_URL).write_text(json.dumps(document, sort_keys=True), encoding="utf-8")
            written.append(DIRECT_URL)
        entries = []
        for path in sorted(p for p in staging.rglob("*") if p.is_file()):
            relative = path.relative_to(staging).as_posix()
            if relative == f"{wheel.dist_info}/{RECORD}":
                continue
            digest, size = hash_file(path)
            entries.append(RecordEntry(relative, digest, size))
        entries.append(RecordEntry(f"{wheel.dist_info}/{RECORD}"))
        (dist_info / RECORD).write_text(format_record(entries), encoding="utf-8")
        written.append(RECORD)
        return [(dist_info / name, f"{wheel.dist_info}/{name}") for name in written]

    def _link(self, staged: List[Tuple[Path, str]], root: Path, backup: _Backup) -> None:
        """Rename staged files into ``root``; files already there are moved into ``backup`` first."""
        linked: List[Path] = []
        created: List[Path] = []
        try:
            for source, relative in sorted(staged, key=lambda item: item[1]):
                destination = root / relative
                for parent in reversed(destination.relative_to(root).parents):
                    directory = root / parent
                    if parent != Path(".") and not directory.exists():
                        directory.mkdir()
                        created.append(directory)
                if destination.is_file() or destination.is_symlink():
                    logger.warning("Overwriting %s, which is not part of the previous installation", relative)
                    backup.displace(destination)
                self._link_file(source, destination)
                linked.append(destination)
                if is_debug_enabled(logger):
                    logger.debug("Linked %s", relative)
        except BaseException:
            for path in reversed(linked):
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
            for directory in reversed(created):
                try:
                    directory.rmdir()
                except OSError:
                    pass
            raise

    def _link_file(self, source: Path, destination: Path) -> None:
        os.replace(source, destination)

    async def uninstall(self, names: Iterable[str], target: TargetEnvironment) -> List[InstalledRecord]:
        """Remove the named distributions; unknown names are reported and skipped."""
        wanted = [canonicalize_name(name) for name in names]

        def body() -> List[InstalledRecord]:
            removed = []
            for name in wanted:
                record = self.record(target, name)
                if record is None:
                    logger.warning("%s is not installed", name)
                    continue
                self._remove(record, target)
                removed.append(record)
            return removed

        return await self._exclusive(target, body)

    def _remove(self, record: InstalledRecord, target: TargetEnvironment) -> None:
        backup = _Backup(target.staging_root / f"{uuid.uuid4().hex}-backup")
        try:
            backup.take(record)
        except OSError as exc:
            backup.restore()
            shutil.rmtree(backup.directory, ignore_errors=True)
            raise InstallFailure(record.name, f"cannot remove installed files: {exc}") from exc
        removed = backup.originals()
        shutil.rmtree(backup.directory, ignore_errors=True)
        _remove_empty_parents(removed, target.root)
        logger.info(
            "Uninstalled %s",
            record,
            extra=extra_context(event="uninstall_package", component="installer", outcome="success", target=record.name),
        )

    def verify(self, target: TargetEnvironment, names: Optional[Iterable[str]] = None) -> Dict[str, List[str]]:
        """Check installed files against their ``RECORD`` hashes.

        Returns ``name -> problems`` for every checked distribution; an empty
        list means the installation is intact.
        """
        results: Dict[str, List[str]] = {}
        if names is None:
            records = self.installed(target)
        else:
            records = []
            for name in names:
                record = self.record(target, name)
                if record is None:
                    results[canonicalize_name(name)] = ["not installed"]
                else:
                    records.append(record)
        for record in records:
            results[record.name] = record.verify()
        return results


def _remove_empty_parents(paths: Iterable[Path], root: Path) -> None:
    directories: Set[Path] = set()
    for path in paths:
        for parent in path.parents:
            if parent == root or root not in parent.parents:
                break
            directories.add(parent)
    for directory in sorted(directories, key=lambda p: len(p.parts), reverse=True):
        try:
            directory.rmdir()
        except OSError:
            pass
