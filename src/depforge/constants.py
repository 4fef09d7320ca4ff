"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    USAGE_ERROR = 2
    CONNECTION_ERROR = 3
    RESOLUTION_CONFLICT = 4
    BUILD_ERROR = 5
    INSTALL_ERROR = 6


class UpgradePolicy(Enum):
    """How previously pinned versions are treated during resolution.

    Args:
        Enum (string): Upgrade policy names accepted on the command line.
    """

    NONE = "none"
    ALL = "all"
    PACKAGES = "packages"


class PrereleaseMode(Enum):
    """When pre-release versions may be selected."""

    IF_NECESSARY = "if-necessary"
    EXPLICIT = "explicit"
    ALLOW = "allow"
    DISALLOW = "disallow"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    PROGRAM_NAME = "depforge"
    USER_AGENT = "depforge/0.3"
    DEFAULT_INDEX_URL = "https://pypi.org/simple/"
    REQUIREMENTS_FILE = "requirements.txt"
    PYPROJECT_TOML_FILE = "pyproject.toml"
    CONFIG_FILE_NAMES = ["depforge.yml", "depforge.yaml", "depforge.json"]
    USER_CONFIG_DIR = "~/.config/depforge"
    DEFAULT_CACHE_DIR = "~/.cache/depforge"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests

    # Network retry budget
    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_MAX_CONCURRENCY = 16
    DOWNLOAD_CHUNK_SIZE = 64 * 1024

    # Simple index content negotiation (PEP 691 first, PEP 503 HTML fallback)
    SIMPLE_ACCEPT = (
        "application/vnd.pypi.simple.v1+json, "
        "application/vnd.pypi.simple.v1+html;q=0.2, "
        "text/html;q=0.01"
    )

    # Cache locking
    CACHE_LOCK_TIMEOUT_SEC = 600
    CACHE_LOCK_POLL_SEC = 0.1
    CACHE_LOCK_PROGRESS_SEC = 5
    CACHE_MANIFEST = "manifest.json"
    CACHE_TEMP_PREFIX = ".tmp-"

    # Builds
    BUILD_MAX_CONCURRENCY = 4
    DEFAULT_BUILD_BACKEND = "setuptools.build_meta:__legacy__"
    DEFAULT_BUILD_REQUIRES = ["setuptools>=40.8.0"]

    # Resolver
    PREFETCH_LIMIT = 50

    # Installed environment
    INSTALLER_NAME = "depforge"
    ENV_LOCK_FILE = ".depforge.lock"
    ENV_STAGING_DIR = ".depforge-staging"

    # Environment variables
    ENV_LOG_LEVEL = "DEPFORGE_LOG_LEVEL"
    ENV_INDEX_URL = "DEPFORGE_INDEX_URL"
    ENV_EXTRA_INDEX_URL = "DEPFORGE_EXTRA_INDEX_URL"
    ENV_CACHE_DIR = "DEPFORGE_CACHE_DIR"
    ENV_CONCURRENCY = "DEPFORGE_CONCURRENCY"
    ENV_OFFLINE = "DEPFORGE_OFFLINE"
    ENV_NO_CACHE = "DEPFORGE_NO_CACHE"
