"""Target environments: where installed files go and which interpreter they serve."""
from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from packaging.tags import compatible_tags, cpython_tags, generic_tags, platform_tags
from packaging.utils import canonicalize_name

from ..cache import Cache
from ..cache.keys import interpreter_key
from ..constants import Constants
from ..errors import InstallFailure
from ..versioning.models import Environment

logger = logging.getLogger(__name__)

SCHEME_KEYS = ("purelib", "platlib", "scripts", "headers", "data")

# Printed by the target interpreter; standard library only.
_INTERPRETER_PROBE = r"""
import json, os, platform, sys
impl = sys.implementation
iver = "{0.major}.{0.minor}.{0.micro}".format(impl.version)
if impl.version.releaselevel != "final":
    iver += impl.version.releaselevel[0] + str(impl.version.serial)
print(json.dumps({
    "implementation_name": impl.name,
    "implementation_version": iver,
    "os_name": os.name,
    "platform_machine": platform.machine(),
    "platform_release": platform.release(),
    "platform_system": platform.system(),
    "platform_version": platform.version(),
    "python_full_version": platform.python_version(),
    "platform_python_implementation": platform.python_implementation(),
    "python_version": ".".join(platform.python_version_tuple()[:2]),
    "sys_platform": sys.platform,
}))
"""


@dataclass(frozen=True)
class TargetEnvironment:
    """A directory that receives installed distributions.

    Libraries are installed directly under ``root`` (the layout of
    ``pip install --target``); scripts go to ``root/bin`` and headers to
    ``root/include/<name>``. ``environment`` is the marker and tag snapshot
    used to resolve for this target.
    """

    root: Path
    environment: Optional[Environment] = None

    @classmethod
    def at(cls, root, environment: Optional[Environment] = None) -> "TargetEnvironment":
        return cls(Path(root).resolve(), environment)

    @property
    def markers(self) -> Environment:
        return self.environment or Environment.current()

    def scheme(self, package: str) -> Dict[str, Path]:
        return {
            "purelib": self.root,
            "platlib": self.root,
            "scripts": self.root / "bin",
            "headers": self.root / "include" / package,
            "data": self.root,
        }

    @property
    def lock_path(self) -> Path:
        return self.root / Constants.ENV_LOCK_FILE

    @property
    def staging_root(self) -> Path:
        return self.root / Constants.ENV_STAGING_DIR

    def ensure(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            self.staging_root.mkdir(exist_ok=True)
        except OSError as exc:
            raise InstallFailure(str(self.root), f"cannot create target directory: {exc}") from exc

    def dist_info_dirs(self) -> Iterator[Path]:
        if not self.root.is_dir():
            return
        for path in sorted(self.root.iterdir()):
            if path.is_dir() and path.name.endswith(".dist-info"):
                yield path

    def find(self, name: str) -> Optional[Path]:
        """The ``.dist-info`` directory of the installed distribution ``name``."""
        wanted = canonicalize_name(name)
        for path in self.dist_info_dirs():
            project = path.name[: -len(".dist-info")].rsplit("-", 1)[0]
            if canonicalize_name(project) == wanted:
                return path
        return None


async def inspect_interpreter(cache: Cache, python: str) -> Environment:
    """Marker and tag snapshot of the interpreter at ``python``.

    The result is cached per executable path and modification time.
    """
    executable = os.path.realpath(python)
    try:
        mtime = os.stat(executable).st_mtime
    except OSError as exc:
        raise InstallFailure(python, f"interpreter not found: {exc}") from exc
    key = interpreter_key(executable, mtime)

    async def producer(directory: Path):
        process = await asyncio.create_subprocess_exec(
            executable, "-S", "-c", _INTERPRETER_PROBE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise InstallFailure(python, f"inspecting the interpreter failed: {stderr.decode(errors='replace').strip()}")
        markers = json.loads(stdout.decode("utf-8"))
        (directory / "markers.json").write_text(json.dumps(markers, sort_keys=True), encoding="utf-8")
        return {"executable": executable}

    entry = await cache.put(key, producer)
    markers = entry.read_json("markers.json")
    return Environment.from_dict(markers, tags=interpreter_tags(markers))


def interpreter_tags(markers: Dict[str, str]) -> List:
    """Supported wheel tags, most preferred first, for an interpreter described by ``markers``.

    Platform tags are those of the running host.
    """
    version = tuple(int(p) for p in markers["python_version"].split(".")[:2])
    platforms = list(platform_tags())
    implementation = markers.get("implementation_name", "cpython")
    if implementation == "cpython":
        tags = list(cpython_tags(version, platforms=platforms))
        interpreter = f"cp{version[0]}{version[1]}"
    else:
        short = {"pypy": "pp"}.get(implementation, implementation[:2])
        interpreter = f"{short}{version[0]}{version[1]}"
        tags = list(generic_tags(interpreter, platforms=platforms))
    tags.extend(compatible_tags(version, interpreter, platforms))
    return tags
