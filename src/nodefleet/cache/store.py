"""Persistent (namespace, version) -> binary path store backed by the filesystem."""

from __future__ import annotations

import errno
import hashlib
import json
import logging
import os
import shutil
import stat
import tempfile
from pathlib import Path

from filelock import FileLock

from nodefleet.cache.rwlock import ReadWriteLock

logger = logging.getLogger(__name__)

INDEX_FILENAME = ".cache_index"
_EXECUTABLE_MODE = 0o755
_STAGING_PREFIX = ".ns-"


class CacheMissError(LookupError):
    """Requested artifact is not cached."""


class NamespaceNotFoundError(CacheMissError):
    """No artifact was ever cached under this namespace."""


class VersionNotFoundError(CacheMissError):
    """Namespace exists but holds no artifact for this version."""


class CacheCorruptedError(OSError):
    """Cache root or a namespace index cannot be opened."""


class CacheWriteError(OSError):
    """Artifact could not be stored."""


class CacheEntryExistsError(CacheWriteError):
    """Destination file already exists; cached artifacts are immutable."""


class ArtifactCache:
    """Caches built binaries by namespace and version.

    Each namespace is a directory under ``root`` holding copied binaries
    and a ``.cache_index`` JSON file mapping version strings to paths.
    All namespace indexes are loaded when the cache is opened.
    """

    def __init__(self, root: Path, stores: dict[str, dict[str, str]]) -> None:
        self.root = root
        self._stores = stores
        self._lock = ReadWriteLock()

    @classmethod
    def open_or_create(cls, root: Path) -> ArtifactCache:
        """Open the cache at ``root``, creating the directory when missing."""

        try:
            root.mkdir(parents=True, exist_ok=True)
            namespace_dirs = sorted(
                path for path in root.iterdir() if path.is_dir() and not path.name.startswith(".")
            )
        except OSError as error:
            raise CacheCorruptedError(f"Unable to open cache ({root}): {error}") from error

        stores: dict[str, dict[str, str]] = {}
        for namespace_dir in namespace_dirs:
            stores[namespace_dir.name] = _read_index(namespace_dir / INDEX_FILENAME)
        logger.debug("Opened cache %s with namespaces %s", root, sorted(stores))
        return cls(root, stores)

    def get(self, namespace: str, version: str) -> Path:
        """Return the cached binary path; versions must match exactly."""

        with self._lock.read_locked():
            store = self._stores.get(namespace)
            if store is None:
                raise NamespaceNotFoundError(f"Cache namespace not found: {namespace!r}")
            cached = store.get(version)
            if cached is None:
                raise VersionNotFoundError(
                    f"Cached version not found: {namespace!r} @ {version!r}",
                )
            return Path(cached)

    def cache(self, namespace: str, version: str, source_path: Path) -> Path:
        """Copy ``source_path`` into the namespace and record it under ``version``.

        The source stays where it is. A new namespace appears on disk with an
        empty index before anything is copied into it. On any later failure
        the version is left unrecorded: no index entry is claimed that a
        reopened cache could not find.
        """

        _validate_namespace(namespace)
        _require_regular_file(source_path)
        namespace_dir = self.root / namespace
        destination = namespace_dir / source_path.name

        with self._lock.write_locked():
            if not namespace_dir.is_dir():
                try:
                    _create_namespace_dir(self.root, namespace_dir)
                except OSError as error:
                    raise CacheWriteError(
                        error.errno or errno.EIO,
                        "Creating cache namespace failed",
                        str(namespace_dir),
                    ) from error
            store = self._stores.setdefault(namespace, {})

            _copy_executable(source_path, destination)
            previous = store.get(version)
            store[version] = str(destination)
            try:
                self._stores[namespace] = _merge_and_write_index(namespace_dir, store)
            except OSError as error:
                logger.warning("Failed updating cache index for %s: %s", namespace, error)
                if previous is None:
                    store.pop(version, None)
                else:
                    store[version] = previous
                destination.unlink(missing_ok=True)
                raise CacheWriteError(
                    error.errno or errno.EIO,
                    f"Writing cache index failed: {error}",
                    str(namespace_dir / INDEX_FILENAME),
                ) from error

        logger.info("Updated cache index with version (%s) at (%s)", version, destination)
        return destination

    def reload(self, namespace: str) -> None:
        """Re-read one namespace index to pick up entries written by other processes."""

        index_path = self.root / namespace / INDEX_FILENAME
        with self._lock.write_locked():
            if not index_path.exists():
                return
            self._stores[namespace] = _read_index(index_path)

    def namespaces(self) -> list[str]:
        with self._lock.read_locked():
            return sorted(self._stores)

    def entries(self, namespace: str) -> dict[str, Path]:
        with self._lock.read_locked():
            store = self._stores.get(namespace)
            if store is None:
                raise NamespaceNotFoundError(f"Cache namespace not found: {namespace!r}")
            return {version: Path(path) for version, path in sorted(store.items())}

    def build_lock(self, namespace: str, version: str) -> FileLock:
        """Cross-process lock serializing builds of one (namespace, version)."""

        digest = hashlib.sha256(f"{namespace}\0{version}".encode()).hexdigest()[:16]
        return FileLock(str(self.root / f".build-{digest}.lock"))


def _validate_namespace(namespace: str) -> None:
    if not namespace or namespace.startswith(".") or "/" in namespace or os.sep in namespace:
        raise ValueError(f"Invalid cache namespace: {namespace!r}")


def _require_regular_file(path: Path) -> None:
    try:
        mode = path.stat().st_mode
    except OSError as error:
        raise CacheWriteError(
            error.errno or errno.ENOENT,
            "Cache target unreadable",
            str(path),
        ) from error
    if not stat.S_ISREG(mode):
        raise CacheWriteError(errno.EINVAL, "Cache target is not a regular file", str(path))


def _copy_executable(source: Path, destination: Path) -> None:
    try:
        with source.open("rb") as source_handle, destination.open("xb") as destination_handle:
            try:
                shutil.copyfileobj(source_handle, destination_handle)
            except OSError:
                destination_handle.close()
                destination.unlink(missing_ok=True)
                raise
    except FileExistsError as error:
        raise CacheEntryExistsError(
            errno.EEXIST,
            "Cached destination exists",
            str(destination),
        ) from error
    except OSError as error:
        raise CacheWriteError(
            error.errno or errno.EIO,
            f"Caching binary from {source} failed",
            str(destination),
        ) from error
    destination.chmod(_EXECUTABLE_MODE)


def _read_index(index_path: Path) -> dict[str, str]:
    try:
        payload = json.loads(index_path.read_text("utf-8"))
    except OSError as error:
        raise CacheCorruptedError(
            f"Reading cache index ({index_path.parent}): {error}",
        ) from error
    except ValueError as error:
        # JSONDecodeError and UnicodeDecodeError
        raise CacheCorruptedError(
            f"Parsing cache index ({index_path.parent}): {error}",
        ) from error
    if not isinstance(payload, dict) or not all(
        isinstance(key, str) and isinstance(value, str) for key, value in payload.items()
    ):
        raise CacheCorruptedError(
            f"Parsing cache index ({index_path.parent}): expected a version -> path object",
        )
    return payload


def _merge_and_write_index(namespace_dir: Path, store: dict[str, str]) -> dict[str, str]:
    index_path = namespace_dir / INDEX_FILENAME
    with FileLock(str(index_path) + ".lock"):
        merged = _read_index(index_path) if index_path.exists() else {}
        merged.update(store)
        _write_index(index_path, merged)
    return merged


def _write_index(index_path: Path, store: dict[str, str]) -> None:
    temp_path = index_path.with_name(index_path.name + ".tmp")
    temp_path.write_text(
        json.dumps(store, ensure_ascii=False, indent=2, sort_keys=True) + "\n",
        "utf-8",
    )
    os.replace(temp_path, index_path)


def _create_namespace_dir(root: Path, namespace_dir: Path) -> None:
    """Publish ``namespace_dir`` together with an empty index in one rename.

    Other processes opening the cache never see a namespace directory
    without its index. Losing the rename to a concurrent creator is fine.
    """

    staging = Path(tempfile.mkdtemp(prefix=_STAGING_PREFIX, dir=root))
    try:
        staging.chmod(_EXECUTABLE_MODE)
        _write_index(staging / INDEX_FILENAME, {})
        try:
            os.rename(staging, namespace_dir)
        except OSError:
            if not namespace_dir.is_dir():
                raise
            logger.debug("Cache namespace %s created concurrently", namespace_dir.name)
    finally:
        shutil.rmtree(staging, ignore_errors=True)
