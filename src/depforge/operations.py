"""High-level operations wiring cache, network, provider, builds, resolver and installer."""
from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

from .build import BuildDispatcher
from .cache import Cache, Refresh
from .common.http_client import NetworkClient
from .common.logging_utils import Timer, extra_context
from .constants import Constants, PrereleaseMode, UpgradePolicy
from .installer import InstallReport, InstalledRecord, Installer, TargetEnvironment, inspect_interpreter
from .registry.provider import DistributionProvider
from .resolver import ResolutionGraph, Resolver
from .versioning.models import Environment, Requirement

logger = logging.getLogger(__name__)


class Session:
    """One depforge run: a cache, a network client and the services built on them.

    Use as an async context manager. Components are created on entry so the
    marker environment can come from probing ``python`` when it is not the
    running interpreter.
    """

    def __init__(
        self,
        *,
        cache: Optional[Cache] = None,
        client=None,
        index_urls: Sequence[str] = (Constants.DEFAULT_INDEX_URL,),
        environment: Optional[Environment] = None,
        python: str = sys.executable,
        offline: bool = False,
        concurrency: int = Constants.HTTP_MAX_CONCURRENCY,
        build_concurrency: int = Constants.BUILD_MAX_CONCURRENCY,
        lock_timeout: float = Constants.CACHE_LOCK_TIMEOUT_SEC,
    ):
        self.cache = cache if cache is not None else Cache(Path(Constants.DEFAULT_CACHE_DIR))
        self._owns_client = client is None
        self.client = client if client is not None else NetworkClient(max_concurrency=concurrency, offline=offline)
        self.index_urls = list(index_urls)
        self.environment = environment
        self.python = python
        self.build_concurrency = build_concurrency
        self.lock_timeout = lock_timeout
        self.provider: Optional[DistributionProvider] = None
        self.builder: Optional[BuildDispatcher] = None
        self.installer: Optional[Installer] = None

    @classmethod
    def from_settings(cls, settings) -> "Session":
        """Build a session from ``cli_config.Settings``."""
        if settings.no_cache:
            cache = Cache.temp()
        else:
            cache = Cache(Path(settings.cache_dir), _refresh(settings))
        return cls(
            cache=cache,
            index_urls=[settings.index_url] + list(settings.extra_index_urls),
            python=settings.python or sys.executable,
            offline=settings.offline,
            concurrency=settings.concurrency,
            lock_timeout=settings.lock_timeout,
        )

    async def start(self) -> "Session":
        if self.provider is not None:
            return self
        if self._owns_client:
            await self.client.start()
        if self.environment is None:
            if os.path.realpath(self.python) == os.path.realpath(sys.executable):
                self.environment = Environment.current()
            else:
                self.environment = await inspect_interpreter(self.cache, self.python)
        self.builder = BuildDispatcher(
            self.cache,
            environment=self.environment,
            python=self.python,
            install_requirements=self._install_build_requirements,
            max_concurrency=self.build_concurrency,
        )
        self.provider = DistributionProvider(
            self.cache,
            self.client,
            environment=self.environment,
            index_urls=self.index_urls,
            builder=self.builder,
        )
        self.installer = Installer(self.provider, lock_timeout=self.lock_timeout)
        return self

    async def close(self) -> None:
        if self.provider is not None:
            cancelled = self.provider.cancel_pending()
            if cancelled:
                logger.debug("Cancelled %d pending background task(s)", cancelled)
        if self._owns_client:
            await self.client.stop()
        self.cache.close()

    async def __aenter__(self) -> "Session":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def target(self, root) -> TargetEnvironment:
        return TargetEnvironment.at(root, self.environment)

    async def resolve(
        self,
        requirements: Sequence[Requirement],
        *,
        constraints: Sequence[Requirement] = (),
        preferences: Optional[Mapping[str, str]] = None,
        upgrade: UpgradePolicy = UpgradePolicy.NONE,
        upgrade_packages: Iterable[str] = (),
        prereleases: PrereleaseMode = PrereleaseMode.IF_NECESSARY,
    ) -> ResolutionGraph:
        await self.start()
        resolver = Resolver(
            self.provider,
            environment=self.environment,
            constraints=constraints,
            preferences=preferences,
            upgrade=upgrade,
            upgrade_packages=upgrade_packages,
            prereleases=prereleases,
        )
        with Timer() as timer:
            graph = await resolver.resolve(requirements)
        logger.info(
            "Resolution finished in %d ms",
            timer.duration_ms(),
            extra=extra_context(event="resolve", component="session", outcome="success", count=len(graph)),
        )
        return graph

    async def install(
        self,
        requirements: Sequence[Requirement],
        target: TargetEnvironment,
        **resolve_options,
    ) -> InstallReport:
        """Resolve ``requirements`` and install the result into ``target``."""
        graph = await self.resolve(requirements, **resolve_options)
        return await self.install_graph(graph, target, requested=[r.name for r in requirements if r.name])

    async def install_graph(
        self,
        graph: ResolutionGraph,
        target: TargetEnvironment,
        *,
        requested: Iterable[str] = (),
    ) -> InstallReport:
        await self.start()
        return await self.installer.install(graph, target, requested=requested)

    async def uninstall(self, names: Iterable[str], target: TargetEnvironment) -> List[InstalledRecord]:
        await self.start()
        return await self.installer.uninstall(names, target)

    async def verify(self, target: TargetEnvironment, names: Optional[Iterable[str]] = None):
        await self.start()
        return self.installer.verify(target, names)

    async def _install_build_requirements(self, requirements: Sequence[Requirement], env_dir: Path) -> None:
        """Resolve and install build requirements into a disposable build environment."""
        graph = await self.resolve(requirements)
        await self.installer.install(graph, self.target(env_dir))


def _refresh(settings) -> Optional[Refresh]:
    if settings.refresh_all:
        return Refresh.all()
    if settings.refresh_packages:
        return Refresh.packages(settings.refresh_packages)
    return None
