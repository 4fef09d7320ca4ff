"""Distribution provider: candidates and metadata across all source kinds."""
from __future__ import annotations

import asyncio
import contextvars
import logging
from typing import Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from packaging.utils import canonicalize_name
from packaging.version import Version

from ..cache import Cache
from ..common.logging_utils import extra_context, is_debug_enabled
from ..constants import Constants
from ..errors import BuildFailure
from ..versioning.models import Environment, RegistrySource, Requirement, SourceSpec
from .models import Candidate, Metadata
from .simple import SimpleIndex
from .sources import HANDLERS, CandidateFactories, SourceContext
from .vcs import GitSource

logger = logging.getLogger(__name__)

# Metadata fetches the current task is part of, outermost first.
_fetching: contextvars.ContextVar = contextvars.ContextVar("depforge_fetching_metadata", default=())


def retrieve_exception(task: "asyncio.Future") -> None:
    """Done-callback marking a background task's exception as observed."""
    if not task.cancelled():
        task.exception()


class CandidateSequence:
    """Lazy, newest-first candidates of one package from one source.

    Nothing is fetched until ``load()`` (or ``async for``) is first awaited;
    ``Candidate`` objects are built only as they are iterated.
    """

    def __init__(self, name: str, loader: Callable[[], Awaitable[CandidateFactories]]):
        self.name = name
        self._loader = loader
        self._task: Optional[asyncio.Task] = None
        self._factories: Optional[CandidateFactories] = None
        self._versions: List[Version] = []
        self._materialized: Dict[Version, Candidate] = {}

    @property
    def loaded(self) -> bool:
        return self._factories is not None

    def start(self) -> None:
        """Begin loading in the background without waiting for it."""
        if self._factories is None and self._task is None:
            self._task = asyncio.ensure_future(self._loader())
            self._task.add_done_callback(retrieve_exception)

    async def load(self) -> "CandidateSequence":
        if self._factories is None:
            self.start()
            factories = await asyncio.shield(self._task)
            if self._factories is None:
                self._factories = factories
                self._versions = sorted(factories, reverse=True)
        return self

    @property
    def versions(self) -> List[Version]:
        """All versions, newest first. Only valid once loaded."""
        if self._factories is None:
            raise RuntimeError(f"candidates for {self.name} were not loaded")
        return list(self._versions)

    def get(self, version: Version) -> Optional[Candidate]:
        if self._factories is None or version not in self._factories:
            return None
        candidate = self._materialized.get(version)
        if candidate is None:
            candidate = self._factories[version]()
            self._materialized[version] = candidate
        return candidate

    def __iter__(self) -> Iterator[Candidate]:
        for version in self.versions:
            yield self.get(version)

    def __len__(self) -> int:
        return len(self.versions)

    async def __aiter__(self):
        await self.load()
        for candidate in self:
            yield candidate

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()
            self._task = None


class DistributionProvider:
    """Answers "which versions exist" and "what does this version need".

    Requests are deduplicated: concurrent ``metadata`` calls for one
    candidate share a single task, so the resolver may prefetch freely.
    """

    def __init__(
        self,
        cache: Cache,
        client,
        *,
        environment: Optional[Environment] = None,
        index_urls: Sequence[str] = (Constants.DEFAULT_INDEX_URL,),
        builder=None,
    ):
        self.cache = cache
        self.client = client
        self.environment = environment or Environment.current()
        self.context = SourceContext(
            cache=cache,
            client=client,
            environment=self.environment,
            simple=SimpleIndex(client, cache, list(index_urls)),
            git=GitSource(cache, offline=getattr(client, "offline", False)),
            builder=builder,
        )
        self._handlers = {kind: handler(self.context) for kind, handler in HANDLERS.items()}
        self._sequences: Dict[Tuple[str, Optional[SourceSpec]], CandidateSequence] = {}
        self._metadata: Dict[Tuple[str, Version, SourceSpec], asyncio.Task] = {}
        self._waiters: Dict[Tuple[str, Version, SourceSpec], int] = {}

    @property
    def builder(self):
        return self.context.builder

    @builder.setter
    def builder(self, builder) -> None:
        self.context.builder = builder

    def _handler(self, source: Optional[SourceSpec]):
        source = source or RegistrySource()
        return self._handlers[source.kind], source

    def candidates(self, package: str, source: Optional[SourceSpec] = None) -> CandidateSequence:
        """Lazy newest-first candidates for ``package`` from ``source`` (default: the indexes)."""
        name = canonicalize_name(package) if package else ""
        key = (name, source)
        sequence = self._sequences.get(key)
        if sequence is None:
            handler, resolved = self._handler(source)
            sequence = CandidateSequence(name, lambda: handler.list(name, resolved))
            self._sequences[key] = sequence
        return sequence

    async def identify(self, requirement: Requirement) -> Requirement:
        """Give an unnamed path/URL requirement the name its metadata declares."""
        if requirement.name or requirement.source is None:
            return requirement
        sequence = await self.candidates("", requirement.source).load()
        candidate = next(iter(sequence))
        self._sequences.setdefault((candidate.name, requirement.source), sequence)
        return requirement.with_name(candidate.name)

    def _metadata_task(self, candidate: Candidate) -> asyncio.Task:
        key = (candidate.name, candidate.version, candidate.source)
        task = self._metadata.get(key)
        if task is None:
            handler, _ = self._handler(candidate.source)
            task = asyncio.ensure_future(self._fetch_metadata(key, handler, candidate))
            task.add_done_callback(retrieve_exception)
            self._metadata[key] = task
        return task

    async def _fetch_metadata(self, key, handler, candidate: Candidate) -> Metadata:
        _fetching.set(_fetching.get() + (key,))
        return await handler.metadata(candidate)

    async def metadata(self, candidate: Candidate) -> Metadata:
        """Metadata for ``candidate``: cache, then index, then a build."""
        if is_debug_enabled(logger):
            logger.debug(
                "Metadata requested",
                extra=extra_context(event="metadata", component="provider", package=candidate.name,
                                    version=str(candidate.version)),
            )
        key = (candidate.name, candidate.version, candidate.source)
        if key in _fetching.get():
            raise BuildFailure(
                candidate.name, "build-env",
                f"cyclic build dependency: reading the metadata of {candidate} requires {candidate} again",
            )
        task = self._metadata_task(candidate)
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            return await asyncio.shield(task)
        finally:
            self._waiters[key] -= 1

    def prefetch(self, candidate: Candidate) -> None:
        """Start fetching metadata in the background."""
        self._metadata_task(candidate)

    async def fetch_wheel(self, candidate: Candidate):
        """Local path of an installable wheel for ``candidate``, downloading or building it."""
        handler, _ = self._handler(candidate.source)
        return await handler.fetch_wheel(candidate)

    def cancel_pending(self, candidates: Optional[Iterable[Candidate]] = None) -> int:
        """Cancel background work nobody is waiting for; returns the number of tasks cancelled.

        With ``candidates`` only their metadata fetches are considered;
        without, every unawaited metadata fetch and candidate listing is.
        """
        if candidates is None:
            keys = list(self._metadata)
        else:
            keys = [(c.name, c.version, c.source) for c in candidates]
        cancelled = 0
        for key in keys:
            task = self._metadata.get(key)
            if task is None or task.done() or self._waiters.get(key, 0):
                continue
            task.cancel()
            del self._metadata[key]
            cancelled += 1
        if candidates is None:
            for sequence in self._sequences.values():
                if sequence.pending:
                    sequence.cancel()
                    cancelled += 1
        return cancelled
