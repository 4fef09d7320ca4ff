"""Error taxonomy shared by the resolver, provider, cache, build and install layers.

Library code raises these; only the CLI converts them into exit codes.
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from .constants import ExitCodes


class DepforgeError(Exception):
    """Base class for all depforge failures."""

    exit_code = ExitCodes.FILE_ERROR


class ParseError(DepforgeError):
    """Malformed requirement, specifier, marker or version."""

    exit_code = ExitCodes.USAGE_ERROR

    def __init__(self, text: str, reason: str):
        super().__init__(f"Invalid requirement {text!r}: {reason}")
        self.text = text
        self.reason = reason


class NotFound(DepforgeError):
    """A package or version is absent from every configured source."""

    exit_code = ExitCodes.RESOLUTION_CONFLICT

    def __init__(self, package: str, version: Optional[str] = None, detail: str = ""):
        what = package if version is None else f"{package}=={version}"
        message = f"{what} was not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.package = package
        self.version = version


class MetadataUnavailable(DepforgeError):
    """The source exists but metadata could not be extracted without a build."""

    exit_code = ExitCodes.BUILD_ERROR

    def __init__(self, package: str, reason: str):
        super().__init__(f"Metadata for {package} is unavailable: {reason}")
        self.package = package
        self.reason = reason


class NetworkError(DepforgeError):
    """Transient network failure; raised once the retry budget is exhausted."""

    exit_code = ExitCodes.CONNECTION_ERROR

    def __init__(self, url: str, reason: str, attempts: int = 1):
        super().__init__(f"Request to {url} failed after {attempts} attempt(s): {reason}")
        self.url = url
        self.reason = reason
        self.attempts = attempts


class BuildFailure(DepforgeError):
    """A build backend failed. Deterministic for the same inputs, never retried."""

    exit_code = ExitCodes.BUILD_ERROR

    def __init__(self, package: str, hook: str, output: str, returncode: Optional[int] = None):
        message = f"Build backend hook {hook} failed for {package}"
        if returncode is not None:
            message = f"{message} (exit status {returncode})"
        if output:
            message = f"{message}\n{output}"
        super().__init__(message)
        self.package = package
        self.hook = hook
        self.output = output
        self.returncode = returncode


class CacheCorruption(DepforgeError):
    """A cache entry failed its integrity check on read."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Corrupted cache entry {path}: {reason}")
        self.path = path
        self.reason = reason


class InstallFailure(DepforgeError):
    """Filesystem or integrity error while writing a package into an environment."""

    exit_code = ExitCodes.INSTALL_ERROR

    def __init__(self, package: str, reason: str):
        super().__init__(f"Failed to install {package}: {reason}")
        self.package = package
        self.reason = reason


class ResolutionConflict(DepforgeError):
    """No assignment satisfies the root requirements.

    Carries the root incompatibility of the derivation, the ordered
    explanation lines and the names of the packages on the derivation path.
    """

    exit_code = ExitCodes.RESOLUTION_CONFLICT

    def __init__(self, incompatibility, lines: Sequence[str], packages: Iterable[str]):
        self.incompatibility = incompatibility
        self.lines: List[str] = list(lines)
        self.packages = frozenset(packages)
        super().__init__("\n".join(self.lines))

    @property
    def explanation(self) -> str:
        return "\n".join(self.lines)


class LockTimeout(DepforgeError):
    """Another process held a cache or environment lock for too long."""

    def __init__(self, path: str, timeout: float):
        super().__init__(f"Timed out after {timeout:.0f}s waiting for lock {path}")
        self.path = path
        self.timeout = timeout
