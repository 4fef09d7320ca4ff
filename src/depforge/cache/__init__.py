"""Content-addressed cache shared across tasks and processes."""
from .http_cache import fetch_with_revalidation
from .keys import CacheBucket, CacheKey, fingerprint_path, fingerprint_tree
from .locking import FileLock, is_locked
from .store import Cache, CacheEntry, Freshness, Refresh, Removal

__all__ = [
    "Cache",
    "CacheBucket",
    "CacheEntry",
    "CacheKey",
    "FileLock",
    "Freshness",
    "Refresh",
    "Removal",
    "fetch_with_revalidation",
    "fingerprint_path",
    "fingerprint_tree",
    "is_locked",
]
