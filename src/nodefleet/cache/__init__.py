"""Versioned artifact cache."""

from nodefleet.cache.store import (
    INDEX_FILENAME,
    ArtifactCache,
    CacheCorruptedError,
    CacheEntryExistsError,
    CacheMissError,
    CacheWriteError,
    NamespaceNotFoundError,
    VersionNotFoundError,
)

__all__ = [
    "INDEX_FILENAME",
    "ArtifactCache",
    "CacheCorruptedError",
    "CacheEntryExistsError",
    "CacheMissError",
    "CacheWriteError",
    "NamespaceNotFoundError",
    "VersionNotFoundError",
]
