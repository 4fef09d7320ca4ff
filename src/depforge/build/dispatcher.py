"""Isolated PEP 517 builds with cached results.

A build runs the backend hooks in a subprocess whose import path holds only
the standard library and a disposable environment. The declared build
requirements are installed into that environment by the same resolver and
installer used for ordinary installs (``install_requirements``). Results are
cached under a key made of the source fingerprint and the build fingerprint
(build requirements, backend and interpreter), so a given source is built
once per toolchain, even across concurrent callers and processes.
"""
from __future__ import annotations

import asyncio
import contextvars
import json
import logging
import os
import shutil
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Sequence

from ..cache import Cache
from ..cache.keys import build_key, fingerprint_path
from ..common.logging_utils import extra_context, Timer
from ..constants import Constants
from ..errors import BuildFailure, ParseError
from ..registry.metadata import read_wheel_metadata_bytes, unpack_archive
from ..registry.models import Metadata, parse_core_metadata
from ..versioning.models import Environment, Requirement
from ..versioning.parser import parse
from .backend import BuildSystem, load_build_system

logger = logging.getLogger(__name__)

HOOK_RUNNER = Path(__file__).with_name("_hook_runner.py")
METADATA_FILE = "METADATA"

RequirementsInstaller = Callable[[Sequence[Requirement], Path], Awaitable[None]]

# Fingerprints of the sources whose build environments are being prepared
# in the current task, outermost first.
_building: contextvars.ContextVar = contextvars.ContextVar("depforge_building", default=())


@dataclass(frozen=True)
class BuildSpec:
    package: str
    source: Path
    source_fingerprint: str
    build_system: BuildSystem
    build_fingerprint: str


class BuildDispatcher:
    """Turns source trees and archives into metadata and wheels."""

    def __init__(
        self,
        cache: Cache,
        *,
        environment: Optional[Environment] = None,
        python: str = sys.executable,
        install_requirements: Optional[RequirementsInstaller] = None,
        max_concurrency: int = Constants.BUILD_MAX_CONCURRENCY,
    ):
        self.cache = cache
        self.environment = environment or Environment.current()
        self.python = python
        self.install_requirements = install_requirements
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self.hook_runs = 0

    def spec(self, source: Path, package: str, fingerprint: Optional[str] = None) -> BuildSpec:
        source = Path(source)
        build_system = load_build_system(source, package)
        return BuildSpec(
            package=package or source.name,
            source=source,
            source_fingerprint=fingerprint or fingerprint_path(source),
            build_system=build_system,
            build_fingerprint=build_system.fingerprint(self.environment.interpreter_tag()),
        )

    # Public operations

    async def metadata(self, source: Path, package: str, fingerprint: Optional[str] = None) -> Metadata:
        """Metadata of the project at ``source`` via ``prepare_metadata_for_build_wheel``.

        Backends without that hook get a full wheel build instead; the wheel
        is cached as well.
        """
        spec = self.spec(source, package, fingerprint)
        self._refuse_cycle(spec)
        key = build_key(spec.package, spec.source_fingerprint, spec.build_fingerprint, kind="metadata")

        async def producer(directory: Path):
            data = await self._prepare_metadata(spec)
            if data is None:
                wheel = await self.build_wheel(source, package, fingerprint)
                data = read_wheel_metadata_bytes(wheel)
            (directory / METADATA_FILE).write_bytes(data)
            return {"source_fingerprint": spec.source_fingerprint, "backend": spec.build_system.backend}

        entry = await self.cache.put(key, producer)
        return parse_core_metadata(entry.read_bytes(METADATA_FILE))

    async def build_wheel(self, source: Path, package: str, fingerprint: Optional[str] = None) -> Path:
        """Build (or reuse) a wheel for the project at ``source``."""
        spec = self.spec(source, package, fingerprint)
        self._refuse_cycle(spec)
        key = build_key(spec.package, spec.source_fingerprint, spec.build_fingerprint, kind="wheel")

        async def producer(directory: Path):
            with self._workspace() as work:
                tree = self._source_tree(spec, work)
                site_dirs = await self._build_environment(spec, tree, work)
                result = await self._run_hook(
                    spec, "build_wheel", tree, work, site_dirs,
                    {"wheel_directory": str(directory), "config_settings": None, "metadata_directory": None},
                )
            filename = result.get("return_val")
            if not filename or not (directory / filename).is_file():
                raise BuildFailure(spec.package, "build_wheel", f"backend reported {filename!r} but wrote no such wheel")
            return {
                "wheel": filename,
                "source_fingerprint": spec.source_fingerprint,
                "backend": spec.build_system.backend,
            }

        entry = await self.cache.put(key, producer)
        return entry.file(entry.manifest["wheel"])

    # Steps

    async def _prepare_metadata(self, spec: BuildSpec) -> Optional[bytes]:
        with self._workspace() as work:
            tree = self._source_tree(spec, work)
            site_dirs = await self._build_environment(spec, tree, work)
            metadata_dir = work / "metadata"
            metadata_dir.mkdir()
            result = await self._run_hook(
                spec, "prepare_metadata_for_build_wheel", tree, work, site_dirs,
                {"metadata_directory": str(metadata_dir), "config_settings": None},
            )
            if result.get("unsupported"):
                logger.debug("%s has no prepare_metadata_for_build_wheel hook", spec.build_system.backend)
                return None
            dist_info = result.get("return_val") or ""
            path = metadata_dir / dist_info / "METADATA"
            if not dist_info or not path.is_file():
                raise BuildFailure(spec.package, "prepare_metadata_for_build_wheel",
                                   f"backend reported {dist_info!r} but wrote no METADATA")
            return path.read_bytes()

    @contextmanager
    def _workspace(self) -> Iterator[Path]:
        work = Path(tempfile.mkdtemp(prefix="depforge-build-"))
        try:
            yield work
        finally:
            shutil.rmtree(work, ignore_errors=True)

    def _source_tree(self, spec: BuildSpec, work: Path) -> Path:
        """A private, writable copy of the sources."""
        target = work / "src"
        if spec.source.is_dir():
            shutil.copytree(
                spec.source, target,
                ignore=shutil.ignore_patterns(".git", ".hg", "__pycache__", "*.pyc", ".tox", ".venv"),
            )
            return target
        return unpack_archive(spec.source, target)

    @staticmethod
    def _refuse_cycle(spec: BuildSpec) -> None:
        """Fail when ``spec`` is requested while its own build environment is being prepared."""
        if spec.source_fingerprint in _building.get():
            raise BuildFailure(
                spec.package, "build-env",
                f"cyclic build dependency: building {spec.package} requires building {spec.package} again",
            )

    @contextmanager
    def _guard(self, spec: BuildSpec):
        token = _building.set(_building.get() + (spec.source_fingerprint,))
        try:
            yield
        finally:
            _building.reset(token)

    async def _build_environment(self, spec: BuildSpec, tree: Path, work: Path) -> List[str]:
        """Install build requirements (declared, then hook-reported) into a disposable environment."""
        env_dir = work / "env"
        env_dir.mkdir()
        requires = list(spec.build_system.requires)
        with self._guard(spec):
            await self._install(spec, requires, env_dir)
            result = await self._run_hook(
                spec, "get_requires_for_build_wheel", tree, work, [str(env_dir)], {"config_settings": None}
            )
            try:
                extra = [parse(text) for text in result.get("return_val") or []]
            except ParseError as exc:
                raise BuildFailure(spec.package, "get_requires_for_build_wheel", str(exc)) from exc
            known = {str(r) for r in requires}
            missing = [r for r in extra if str(r) not in known]
            if missing:
                await self._install(spec, requires + missing, env_dir)
        return [str(env_dir)]

    async def _install(self, spec: BuildSpec, requirements: List[Requirement], env_dir: Path) -> None:
        if not requirements:
            return
        if self.install_requirements is None:
            raise BuildFailure(spec.package, "build-env", "cannot install build requirements: no installer configured")
        logger.info(
            "Installing build requirements for %s: %s",
            spec.package,
            ", ".join(str(r) for r in requirements),
            extra=extra_context(event="build_env", component="build", package=spec.package),
        )
        await self.install_requirements(requirements, env_dir)

    async def _run_hook(
        self,
        spec: BuildSpec,
        hook: str,
        tree: Path,
        work: Path,
        site_dirs: List[str],
        kwargs: Dict[str, Any],
    ) -> Dict[str, Any]:
        control = work / f"hook-{hook}"
        control.mkdir(exist_ok=True)
        request = {
            "backend": spec.build_system.backend,
            "backend_path": [str(tree / p) for p in spec.build_system.backend_path],
            "site_dirs": site_dirs,
            "kwargs": kwargs,
        }
        (control / "input.json").write_text(json.dumps(request), encoding="utf-8")
        env = dict(os.environ)
        env.pop("PYTHONPATH", None)
        env["PYTHONNOUSERSITE"] = "1"

        async with self._semaphore:
            self.hook_runs += 1
            logger.info(
                "Running %s for %s",
                hook,
                spec.package,
                extra=extra_context(event="build_hook", component="build", action=hook, package=spec.package),
            )
            with Timer() as timer:
                process = await asyncio.create_subprocess_exec(
                    self.python, "-S", "-s", str(HOOK_RUNNER), hook, str(control),
                    cwd=str(tree),
                    env=env,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                )
                try:
                    output, _ = await process.communicate()
                except asyncio.CancelledError:
                    process.kill()
                    await process.wait()
                    raise
        text = output.decode("utf-8", errors="replace")
        logger.debug("%s for %s finished in %d ms", hook, spec.package, timer.duration_ms())
        if process.returncode != 0:
            raise BuildFailure(spec.package, hook, text, process.returncode)
        try:
            result = json.loads((control / "output.json").read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise BuildFailure(spec.package, hook, f"{text}\nno result from hook runner: {exc}") from exc
        if result.get("backend_unavailable"):
            raise BuildFailure(spec.package, hook, result.get("traceback", "build backend is not importable"))
        return result
