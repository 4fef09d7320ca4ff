"""Git checkouts for VCS requirements.

Each repository URL gets one bare database in the cache ``git`` bucket that
is fetched into as needed. Revisions are resolved to commit ids, and every
commit is exported once into its own immutable checkout entry, so a VCS
source's fingerprint is its commit id.
"""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..cache import Cache
from ..cache.keys import git_key
from ..common.logging_utils import extra_context, safe_url
from ..errors import NetworkError, NotFound
from ..versioning.models import VcsSource

logger = logging.getLogger(__name__)

_FULL_SHA = re.compile(r"^[0-9a-f]{40}$")
CHECKOUT_DIR = "checkout"


class GitError(Exception):
    def __init__(self, args: List[str], returncode: int, output: str):
        super().__init__(f"git {' '.join(args)} exited with {returncode}: {output.strip()}")
        self.returncode = returncode
        self.output = output


async def run_git(args: List[str], cwd: Optional[Path] = None) -> str:
    env = dict(os.environ)
    env["GIT_TERMINAL_PROMPT"] = "0"
    process = await asyncio.create_subprocess_exec(
        "git",
        *args,
        cwd=str(cwd) if cwd else None,
        env=env,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    output, _ = await process.communicate()
    text = output.decode("utf-8", errors="replace")
    if process.returncode != 0:
        raise GitError(args, process.returncode, text)
    return text


class GitSource:
    """Fetches and checks out git repositories through the cache."""

    def __init__(self, cache: Cache, *, offline: bool = False):
        self.cache = cache
        self.offline = offline
        self._db_locks: Dict[str, asyncio.Lock] = {}
        self._fetched: Dict[Tuple[str, str], str] = {}

    def _db_path(self, url: str) -> Path:
        return self.cache.entry_path(git_key(url, "db"))

    async def _ensure_db(self, url: str, rev: Optional[str]) -> Path:
        db = self._db_path(url)
        if not (db / "HEAD").exists():
            db.mkdir(parents=True, exist_ok=True)
            await run_git(["init", "--bare", "--quiet", str(db)])
        if self.offline:
            return db
        refspecs = ["+refs/heads/*:refs/remotes/origin/*", "+refs/tags/*:refs/tags/*", "+HEAD:refs/remotes/origin/HEAD"]
        if rev and _FULL_SHA.match(rev):
            refspecs.append(rev)
        logger.info("Fetching %s", safe_url(url),
                    extra=extra_context(event="git_fetch", component="vcs", target=safe_url(url)))
        try:
            await run_git(["--git-dir", str(db), "fetch", "--force", "--quiet", url, *refspecs])
        except GitError as exc:
            if rev and _FULL_SHA.match(rev):
                # the commit may not be advertised; retry with branches and tags only
                try:
                    await run_git(["--git-dir", str(db), "fetch", "--force", "--quiet", url, *refspecs[:-1]])
                    return db
                except GitError:
                    pass
            raise NetworkError(safe_url(url), exc.output.strip() or "git fetch failed") from exc
        return db

    async def _resolve_commit(self, db: Path, url: str, rev: Optional[str]) -> str:
        candidates = [f"refs/remotes/origin/{rev}", f"refs/tags/{rev}", rev] if rev else ["refs/remotes/origin/HEAD"]
        for candidate in candidates:
            try:
                out = await run_git(["--git-dir", str(db), "rev-parse", "--verify", "--quiet", f"{candidate}^{{commit}}"])
            except GitError:
                continue
            return out.strip()
        raise NotFound(safe_url(url), rev, detail="revision not found in repository")

    async def resolve(self, source: VcsSource) -> str:
        """Resolve the source's revision to a commit id, fetching when needed."""
        if source.vcs != "git":
            raise NotFound(source.to_url(), detail=f"unsupported version control system {source.vcs!r}")
        memo = (source.url, source.rev or "")
        if memo in self._fetched:
            return self._fetched[memo]
        lock = self._db_locks.setdefault(source.url, asyncio.Lock())
        async with lock:
            if memo in self._fetched:
                return self._fetched[memo]
            key = git_key(source.url, "db")
            async with self.cache.lock_for(key).hold(description=f"fetching {safe_url(source.url)}"):
                db = await self._ensure_db(source.url, source.rev)
                commit = await self._resolve_commit(db, source.url, source.rev)
        self._fetched[memo] = commit
        return commit

    async def checkout(self, source: VcsSource) -> Tuple[str, Path]:
        """Return (commit id, project directory) for ``source``."""
        commit = await self.resolve(source)
        db = self._db_path(source.url)

        async def producer(directory: Path):
            target = directory / CHECKOUT_DIR
            await run_git(["clone", "--quiet", "--shared", "--no-checkout", str(db), str(target)])
            await run_git(["-c", "advice.detachedHead=false", "checkout", "--quiet", commit], cwd=target)
            shutil.rmtree(target / ".git")
            return {"origin_url": safe_url(source.url), "commit": commit}

        entry = await self.cache.put(git_key(source.url, "checkout", commit), producer)
        project = entry.file(CHECKOUT_DIR)
        if source.subdirectory:
            project = project / source.subdirectory
            if not project.is_dir():
                raise NotFound(source.to_url(), detail=f"subdirectory {source.subdirectory!r} does not exist")
        return commit, project
