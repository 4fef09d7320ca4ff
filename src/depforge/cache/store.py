"""Content-addressed on-disk cache shared by concurrent tasks and processes.

Layout::

    <root>/CACHEDIR.TAG
    <root>/.gitignore
    <root>/<bucket>/<package>/<digest>/manifest.json
    <root>/<bucket>/<package>/<digest>/<files...>
    <root>/<bucket>/<package>/<digest>.lock

An entry directory is never modified after it is committed; replacing an
entry renames a fully written temporary directory over it.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, Iterator, Optional, Set

from packaging.utils import canonicalize_name

from ..constants import Constants
from ..errors import CacheCorruption
from ..common.logging_utils import extra_context, is_debug_enabled, Timer
from .keys import CacheBucket, CacheKey, file_sha256
from .locking import FileLock, is_locked

logger = logging.getLogger(__name__)

CACHEDIR_TAG = (
    "Signature: 8a477f597d28d172789f06886806bc55\n"
    "# This file is a cache directory tag created by depforge.\n"
    "# For information about cache directory tags see https://bford.info/cachedir/\n"
)

Producer = Callable[[Path], Awaitable[Optional[Dict[str, Any]]]]


class Freshness(Enum):
    """Whether a cached entry may be used as-is."""

    FRESH = "fresh"
    STALE = "stale"
    MISSING = "missing"


@dataclass(frozen=True)
class Refresh:
    """Which entries created before ``timestamp`` must be refreshed.

    ``mode`` is ``none`` (trust everything), ``all`` or ``packages`` (only
    entries belonging to the named packages).
    """

    mode: str = "none"
    timestamp: float = 0.0
    package_names: FrozenSet[str] = frozenset()

    @classmethod
    def none(cls) -> "Refresh":
        return cls()

    @classmethod
    def all(cls, timestamp: Optional[float] = None) -> "Refresh":
        return cls("all", time.time() if timestamp is None else timestamp)

    @classmethod
    def packages(cls, names: Iterable[str], timestamp: Optional[float] = None) -> "Refresh":
        return cls(
            "packages",
            time.time() if timestamp is None else timestamp,
            frozenset(canonicalize_name(n) for n in names),
        )

    def applies_to(self, package: str) -> bool:
        if self.mode == "all":
            return True
        if self.mode == "packages":
            return bool(package) and canonicalize_name(package) in self.package_names
        return False


@dataclass
class CacheEntry:
    """A committed entry: its directory and parsed manifest."""

    key: CacheKey
    path: Path
    manifest: Dict[str, Any] = field(default_factory=dict)

    @property
    def fingerprint(self) -> str:
        return self.manifest.get("fingerprint", "")

    @property
    def etag(self) -> Optional[str]:
        return self.manifest.get("etag")

    @property
    def last_modified(self) -> Optional[str]:
        return self.manifest.get("last_modified")

    @property
    def origin_url(self) -> Optional[str]:
        return self.manifest.get("origin_url")

    @property
    def created(self) -> float:
        return float(self.manifest.get("created", 0.0))

    @property
    def files(self) -> Dict[str, str]:
        return dict(self.manifest.get("files", {}))

    def file(self, name: str) -> Path:
        return self.path / name

    def read_bytes(self, name: str) -> bytes:
        return (self.path / name).read_bytes()

    def read_json(self, name: str) -> Any:
        return json.loads(self.read_bytes(name))


@dataclass
class Removal:
    """Summary of a maintenance operation."""

    entries: int = 0
    files: int = 0
    bytes: int = 0

    def add_tree(self, path: Path) -> None:
        if path.is_dir():
            for dirpath, _, filenames in os.walk(path):
                for filename in filenames:
                    self._count(Path(dirpath) / filename)
        elif path.exists():
            self._count(path)

    def _count(self, path: Path) -> None:
        self.files += 1
        try:
            self.bytes += path.stat().st_size
        except OSError:
            pass


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path, ignore_errors=True)
    elif path.exists() or path.is_symlink():
        path.unlink()


class Cache:
    """The shared content cache. One instance is passed to every collaborator."""

    def __init__(
        self,
        root: Path,
        refresh: Optional[Refresh] = None,
        *,
        lock_timeout: float = Constants.CACHE_LOCK_TIMEOUT_SEC,
        temporary: bool = False,
    ):
        self.root = Path(root).expanduser()
        self.refresh = refresh or Refresh.none()
        self.lock_timeout = lock_timeout
        self.temporary = temporary
        self._inflight: Dict[str, asyncio.Future] = {}
        self._verified: Set[str] = set()
        self._validated: Set[str] = set()
        self._initialize()

    @classmethod
    def temp(cls) -> "Cache":
        """A throwaway cache for ``--no-cache`` runs; removed by ``close()``."""
        return cls(Path(tempfile.mkdtemp(prefix="depforge-cache-")), temporary=True)

    def close(self) -> None:
        if self.temporary:
            shutil.rmtree(self.root, ignore_errors=True)

    def _initialize(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        tag = self.root / "CACHEDIR.TAG"
        if not tag.exists():
            tag.write_text(CACHEDIR_TAG, encoding="utf-8")
        gitignore = self.root / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("*\n", encoding="utf-8")
        for bucket in CacheBucket:
            (self.root / bucket.value).mkdir(exist_ok=True)

    def bucket(self, bucket: CacheBucket) -> Path:
        return self.root / bucket.value

    def entry_path(self, key: CacheKey) -> Path:
        return self.root / key.relative_path

    def lock_for(self, key: CacheKey) -> FileLock:
        path = self.entry_path(key)
        return FileLock(path.with_name(path.name + ".lock"), timeout=self.lock_timeout)

    # Reads

    def _load(self, key: CacheKey) -> Optional[CacheEntry]:
        path = self.entry_path(key)
        if not path.is_dir():
            return None
        manifest_path = path / Constants.CACHE_MANIFEST
        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise CacheCorruption(str(path), "manifest is missing") from exc
        except (OSError, ValueError) as exc:
            raise CacheCorruption(str(path), f"unreadable manifest: {exc}") from exc
        if not isinstance(manifest, dict) or manifest.get("fingerprint") != key.digest:
            raise CacheCorruption(str(path), "fingerprint does not match key")

        token = f"{path}:{manifest.get('created')}"
        if token not in self._verified:
            for name, expected in manifest.get("files", {}).items():
                target = path / name
                if not target.is_file():
                    raise CacheCorruption(str(path), f"missing file {name}")
                if file_sha256(target) != expected:
                    raise CacheCorruption(str(path), f"hash mismatch for {name}")
            self._verified.add(token)
        return CacheEntry(key=key, path=path, manifest=manifest)

    def get(self, key: CacheKey) -> Optional[CacheEntry]:
        """Return the entry for ``key`` or None on a miss.

        A corrupted entry is evicted and reported as a miss.
        """
        try:
            return self._load(key)
        except CacheCorruption as exc:
            logger.warning(
                "%s; evicting",
                exc,
                extra=extra_context(event="cache_corruption", component="cache", target=str(key)),
            )
            self._evict_path(self.entry_path(key))
            return None

    def freshness(self, entry: Optional[CacheEntry]) -> Freshness:
        if entry is None:
            return Freshness.MISSING
        if self.refresh.applies_to(entry.key.package) and entry.created < self.refresh.timestamp:
            return Freshness.STALE
        return Freshness.FRESH

    def is_validated(self, key: CacheKey) -> bool:
        """True once the entry was revalidated against its origin in this session."""
        return key.digest in self._validated

    def mark_validated(self, key: CacheKey) -> None:
        self._validated.add(key.digest)

    # Writes

    async def put(self, key: CacheKey, producer: Producer, *, replace: bool = False) -> CacheEntry:
        """Return the entry for ``key``, running ``producer`` only if needed.

        ``producer(directory)`` writes the entry's files into ``directory``
        and may return extra manifest fields (``etag``, ``last_modified``,
        ``origin_url``). Concurrent callers in this process share one
        producer run; cooperating processes serialize on the key's lock file
        and re-check the cache once they hold it. With ``replace`` an
        existing entry is produced again and swapped in atomically.
        """
        if not replace:
            entry = self.get(key)
            if entry is not None and self.freshness(entry) is Freshness.FRESH:
                return entry

        digest = key.digest
        while digest in self._inflight:
            pending = self._inflight[digest]
            try:
                return await asyncio.shield(pending)
            except asyncio.CancelledError:
                if pending.cancelled():
                    continue
                raise

        future = asyncio.get_running_loop().create_future()
        future.add_done_callback(lambda f: f.cancelled() or f.exception())
        self._inflight[digest] = future
        try:
            entry = await self._produce(key, producer, replace)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as exc:
            future.set_exception(exc)
            raise
        else:
            future.set_result(entry)
            return entry
        finally:
            self._inflight.pop(digest, None)

    async def _produce(self, key: CacheKey, producer: Producer, replace: bool) -> CacheEntry:
        path = self.entry_path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        async with self.lock_for(key).hold(description=f"writing cache entry {key}"):
            if not replace:
                entry = self.get(key)
                if entry is not None and self.freshness(entry) is Freshness.FRESH:
                    logger.debug("Cache entry %s was produced by another process", key)
                    return entry

            staging = path.parent / f"{Constants.CACHE_TEMP_PREFIX}{uuid.uuid4().hex}"
            staging.mkdir()
            try:
                with Timer() as timer:
                    extra = await producer(staging) or {}
                manifest = self._write_manifest(key, staging, extra)
                self._commit(staging, path)
            except BaseException:
                shutil.rmtree(staging, ignore_errors=True)
                raise

        if is_debug_enabled(logger):
            logger.debug(
                "Cache entry written",
                extra=extra_context(
                    event="cache_put",
                    component="cache",
                    target=str(key),
                    duration_ms=timer.duration_ms(),
                ),
            )
        self._verified.add(f"{path}:{manifest['created']}")
        return CacheEntry(key=key, path=path, manifest=manifest)

    def _write_manifest(self, key: CacheKey, staging: Path, extra: Dict[str, Any]) -> Dict[str, Any]:
        files: Dict[str, str] = {}
        for dirpath, _, filenames in os.walk(staging):
            for filename in filenames:
                full = Path(dirpath) / filename
                if full.is_symlink():
                    continue
                rel = full.relative_to(staging).as_posix()
                if rel == Constants.CACHE_MANIFEST:
                    continue
                files[rel] = file_sha256(full)
        manifest = {
            "fingerprint": key.digest,
            "key": list(key.parts),
            "bucket": key.bucket.value,
            "package": key.package,
            "created": time.time(),
            "files": dict(sorted(files.items())),
        }
        for name, value in extra.items():
            if value is not None:
                manifest[name] = value
        (staging / Constants.CACHE_MANIFEST).write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        return manifest

    def _commit(self, staging: Path, path: Path) -> None:
        previous = None
        if path.exists():
            previous = path.parent / f"{Constants.CACHE_TEMP_PREFIX}old-{uuid.uuid4().hex}"
            os.rename(path, previous)
        os.rename(staging, path)
        if previous is not None:
            shutil.rmtree(previous, ignore_errors=True)

    # Maintenance

    def _evict_path(self, path: Path) -> None:
        if path.exists():
            aside = path.parent / f"{Constants.CACHE_TEMP_PREFIX}evict-{uuid.uuid4().hex}"
            try:
                os.rename(path, aside)
            except OSError:
                aside = path
            shutil.rmtree(aside, ignore_errors=True)

    def remove_entry(self, key: CacheKey) -> None:
        self._evict_path(self.entry_path(key))

    def iter_entries(self) -> Iterator[Path]:
        """Committed entry directories across every bucket."""
        for bucket in CacheBucket:
            base = self.bucket(bucket)
            if not base.is_dir():
                continue
            for package_dir in sorted(base.iterdir()):
                if not package_dir.is_dir():
                    continue
                for entry_dir in sorted(package_dir.iterdir()):
                    if entry_dir.is_dir() and not entry_dir.name.startswith(Constants.CACHE_TEMP_PREFIX):
                        yield entry_dir

    def clear(self) -> Removal:
        """Remove every entry and reinitialize the cache root."""
        removal = Removal()
        if self.root.exists():
            for child in self.root.iterdir():
                removal.add_tree(child)
                _remove(child)
        removal.entries = removal.files
        self._verified.clear()
        self._validated.clear()
        self._initialize()
        logger.info("Cleared cache at %s (%d files)", self.root, removal.files)
        return removal

    def remove(self, package: str) -> Removal:
        """Remove every entry belonging to ``package``."""
        name = canonicalize_name(package)
        removal = Removal()
        for bucket in CacheBucket:
            package_dir = self.bucket(bucket) / name
            if package_dir.is_dir():
                removal.entries += sum(1 for p in package_dir.iterdir() if p.is_dir())
                removal.add_tree(package_dir)
                shutil.rmtree(package_dir, ignore_errors=True)
        return removal

    def prune(self) -> Removal:
        """Remove leftovers: unknown buckets, temporary directories and stale lock files."""
        removal = Removal()
        known = {bucket.value for bucket in CacheBucket}
        for child in self.root.iterdir():
            if child.name in ("CACHEDIR.TAG", ".gitignore") or child.name in known:
                continue
            removal.add_tree(child)
            _remove(child)
            removal.entries += 1
        for bucket in CacheBucket:
            base = self.bucket(bucket)
            for package_dir in base.iterdir() if base.is_dir() else ():
                if not package_dir.is_dir():
                    continue
                for child in list(package_dir.iterdir()):
                    if child.name.startswith(Constants.CACHE_TEMP_PREFIX):
                        removal.add_tree(child)
                        _remove(child)
                    elif child.suffix == ".lock":
                        entry_dir = child.with_suffix("")
                        if not entry_dir.exists() and not is_locked(child):
                            _remove(child)
                if not any(package_dir.iterdir()):
                    package_dir.rmdir()
        return removal

    def evict(self, *, max_age: Optional[float] = None, max_bytes: Optional[int] = None,
              now: Optional[float] = None) -> Removal:
        """Bound the cache by entry age and/or total size, oldest first.

        Entries whose lock is currently held are in use and are skipped.
        """
        now = time.time() if now is None else now
        removal = Removal()
        candidates = []
        for entry_dir in self.iter_entries():
            created = 0.0
            try:
                manifest = json.loads((entry_dir / Constants.CACHE_MANIFEST).read_text(encoding="utf-8"))
                created = float(manifest.get("created", 0.0))
            except (OSError, ValueError):
                # mutable working directories such as git databases
                continue
            size = Removal()
            size.add_tree(entry_dir)
            candidates.append((created, entry_dir, size.bytes))
        candidates.sort(key=lambda item: (item[0], str(item[1])))
        total = sum(item[2] for item in candidates)

        for created, entry_dir, size in candidates:
            too_old = max_age is not None and now - created > max_age
            too_big = max_bytes is not None and total > max_bytes
            if not (too_old or too_big):
                continue
            if is_locked(entry_dir.with_name(entry_dir.name + ".lock")):
                logger.debug("Skipping in-use cache entry %s", entry_dir)
                continue
            removal.add_tree(entry_dir)
            removal.entries += 1
            self._evict_path(entry_dir)
            total -= size
        return removal

    def size(self) -> int:
        total = Removal()
        total.add_tree(self.root)
        return total.bytes
