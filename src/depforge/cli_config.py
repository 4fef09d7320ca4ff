"""Runtime settings for the CLI.

Settings come from, in increasing precedence: built-in defaults in
``Constants``, a YAML or JSON configuration file, ``DEPFORGE_*``
environment variables, and command line flags.
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .constants import Constants
from .errors import ParseError

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class Settings:
    """Effective configuration of one CLI invocation."""

    index_url: str = Constants.DEFAULT_INDEX_URL
    extra_index_urls: List[str] = field(default_factory=list)
    cache_dir: str = Constants.DEFAULT_CACHE_DIR
    no_cache: bool = False
    offline: bool = False
    concurrency: int = Constants.HTTP_MAX_CONCURRENCY
    lock_timeout: float = float(Constants.CACHE_LOCK_TIMEOUT_SEC)
    python: Optional[str] = None
    refresh_all: bool = False
    refresh_packages: List[str] = field(default_factory=list)

    def update(self, values: Mapping[str, Any], origin: str) -> None:
        known = {f.name: f for f in fields(self)}
        for key, value in values.items():
            name = key.replace("-", "_")
            if name not in known:
                logger.warning("Ignoring unknown setting %r from %s", key, origin)
                continue
            if value is None:
                continue
            setattr(self, name, _coerce(name, value, getattr(self, name), origin))


def _coerce(name: str, value: Any, current: Any, origin: str) -> Any:
    try:
        if isinstance(current, bool):
            return value if isinstance(value, bool) else str(value).strip().lower() in _TRUE
        if isinstance(current, list):
            if isinstance(value, str):
                return [part for part in value.split() if part]
            return [str(part) for part in value]
        if isinstance(current, int):
            return int(value)
        if isinstance(current, float):
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ParseError(f"{name}={value!r}", f"invalid value in {origin}: {exc}") from exc
    return str(value)


def default_config_paths() -> List[Path]:
    paths = [Path.cwd() / name for name in Constants.CONFIG_FILE_NAMES]
    user_dir = Path(Constants.USER_CONFIG_DIR).expanduser()
    paths.extend(user_dir / name.replace("depforge", "config") for name in Constants.CONFIG_FILE_NAMES)
    return paths


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read a YAML or JSON configuration file (chosen by extension).

    Raises:
        ParseError: when the file is malformed or not a mapping.
        OSError: when the file cannot be read.
    """
    with open(path, "r", encoding="utf-8") as fh:
        try:
            if path.suffix.lower() == ".json":
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh)
        except (ValueError, yaml.YAMLError) as exc:
            raise ParseError(str(path), f"invalid configuration: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ParseError(str(path), "configuration must be a mapping")
    return data


def environment_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    mapping = {
        Constants.ENV_INDEX_URL: "index_url",
        Constants.ENV_EXTRA_INDEX_URL: "extra_index_urls",
        Constants.ENV_CACHE_DIR: "cache_dir",
        Constants.ENV_CONCURRENCY: "concurrency",
        Constants.ENV_OFFLINE: "offline",
        Constants.ENV_NO_CACHE: "no_cache",
    }
    return {name: environ[var] for var, name in mapping.items() if environ.get(var)}


def cli_overrides(args) -> Dict[str, Any]:
    """Settings given on the command line; absent flags are not overrides."""
    values = {
        "index_url": getattr(args, "INDEX_URL", None),
        "extra_index_urls": getattr(args, "EXTRA_INDEX_URLS", None) or None,
        "cache_dir": getattr(args, "CACHE_DIR", None),
        "no_cache": getattr(args, "NO_CACHE", False) or None,
        "offline": getattr(args, "OFFLINE", False) or None,
        "concurrency": getattr(args, "CONCURRENCY", None),
        "python": getattr(args, "PYTHON", None),
        "refresh_all": getattr(args, "REFRESH", False) or None,
        "refresh_packages": getattr(args, "REFRESH_PACKAGES", None) or None,
    }
    return {key: value for key, value in values.items() if value is not None}


def load_settings(args=None, environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Effective settings for ``args`` (an argparse namespace, or None)."""
    settings = Settings()
    explicit = getattr(args, "CONFIG", None) if args is not None else None
    if explicit:
        path = Path(explicit).expanduser()
        settings.update(load_config_file(path), str(path))
    else:
        for path in default_config_paths():
            if path.is_file():
                logger.debug("Loading configuration from %s", path)
                settings.update(load_config_file(path), str(path))
                break
    settings.update(environment_overrides(environ), "environment")
    if args is not None:
        settings.update(cli_overrides(args), "command line")
    return settings
