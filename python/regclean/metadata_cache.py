"""
Durable metadata cache for registry images.

Fetching the creation time and size of a tag costs two registry round-trips
(manifest + config blob), so results are kept on disk across runs under the
key ``repository:tag``. A tag's metadata is written once and trusted from
then on; there is no expiry or invalidation.

Two interchangeable backends implement the same get/set contract:

- ``DiskMetadataCache``: one file per key. Every read or write takes an
  ``fcntl`` advisory lock on the key's file, polling until a bounded
  timeout. Several regclean processes may share the directory.
- ``SQLiteMetadataCache``: one ``cache`` table in an SQLite database, using
  an atomic upsert and SQLite's own locking.

Lock timeouts and undecodable entries raise ``CacheError`` subclasses,
which callers treat as a cache miss.
"""

import fcntl
import json
import logging
import os
import sqlite3
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional
from urllib.parse import quote

logger = logging.getLogger(__name__)

DISK_CACHE_TYPE = "disk"
SQLITE_CACHE_TYPE = "sqlite"

CACHE_FILE_SUFFIX = ".cache"
SQLITE_FILENAME = "cache.db"


class CacheError(Exception):
    """Base class for metadata cache failures"""


class CacheLockTimeoutError(CacheError):
    """The lock protecting a cache entry could not be acquired in time"""


class CacheDecodeError(CacheError):
    """A stored cache entry could not be decoded"""


@dataclass(frozen=True)
class ImageMetadata:
    """Creation time and total size (config blob + layers) of one tag"""

    created_at: datetime
    total_size_bytes: int

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {
            "created_at": self.created_at.isoformat(),
            "total_size_bytes": self.total_size_bytes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImageMetadata":
        created_at = datetime.fromisoformat(data["created_at"])
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        size = int(data["total_size_bytes"])
        if size < 0:
            raise ValueError(f"negative size {size}")
        return cls(created_at=created_at, total_size_bytes=size)

    def encode(self) -> bytes:
        return json.dumps(self.to_dict(), sort_keys=True).encode("utf-8")

    @classmethod
    def decode(cls, payload: bytes) -> "ImageMetadata":
        """Decode a stored entry

        Raises:
            CacheDecodeError: if the payload is not a valid metadata record
        """
        try:
            return cls.from_dict(json.loads(payload.decode("utf-8")))
        except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
            raise CacheDecodeError(f"failed to decode cache entry: {e}") from e


class MetadataCache(ABC):
    """Key -> ImageMetadata store shared across process runs"""

    cache_type = ""

    @abstractmethod
    def get(self, key: str) -> Optional[ImageMetadata]:
        """Return the cached metadata, or None when the key was never set

        Raises:
            CacheLockTimeoutError: the entry could not be locked in time
            CacheDecodeError: the stored entry is corrupt
        """

    @abstractmethod
    def set(self, key: str, value: ImageMetadata) -> None:
        """Store metadata for a key, replacing any previous value

        Raises:
            CacheError: the value could not be stored safely
        """

    def close(self) -> None:
        """Release any handles held by the backend"""


class DiskMetadataCache(MetadataCache):
    """One file per key under a base directory, guarded by fcntl locks"""

    cache_type = DISK_CACHE_TYPE

    def __init__(self, base_dir: str, lock_timeout: float = 1.0, poll_interval: float = 0.25):
        self.base_dir = base_dir
        self.lock_timeout = lock_timeout
        self.poll_interval = poll_interval
        os.makedirs(self.base_dir, mode=0o775, exist_ok=True)

    def key_path(self, key: str) -> str:
        # Repository paths contain slashes; keep every key a single file
        return os.path.join(self.base_dir, quote(key, safe="") + CACHE_FILE_SUFFIX)

    @contextmanager
    def _locked(self, fileobj, exclusive: bool) -> Iterator[None]:
        """Hold an advisory lock on an open file, polling until lock_timeout.

        Raises:
            CacheLockTimeoutError: if the lock is still held elsewhere at the deadline
        """
        operation = (fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH) | fcntl.LOCK_NB
        deadline = time.monotonic() + self.lock_timeout
        while True:
            try:
                fcntl.flock(fileobj.fileno(), operation)
                break
            except (BlockingIOError, PermissionError):
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise CacheLockTimeoutError(
                        f"unable to lock cache file {fileobj.name} within {self.lock_timeout}s"
                    )
                time.sleep(min(self.poll_interval, remaining))

        try:
            yield
        finally:
            try:
                fcntl.flock(fileobj.fileno(), fcntl.LOCK_UN)
            except OSError as e:
                logger.warning(f"Unable to unlock file {fileobj.name}: {e}")

    def get(self, key: str) -> Optional[ImageMetadata]:
        filename = self.key_path(key)
        try:
            f = open(filename, "rb")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheError(f"failed to open cache file {filename}: {e}") from e

        with f:
            with self._locked(f, exclusive=False):
                try:
                    payload = f.read()
                except OSError as e:
                    raise CacheError(f"failed to read cache file {filename}: {e}") from e

        return ImageMetadata.decode(payload)

    def set(self, key: str, value: ImageMetadata) -> None:
        filename = self.key_path(key)
        payload = value.encode()
        try:
            # Owner-only permissions, like any other per-user cache
            fd = os.open(filename, os.O_RDWR | os.O_CREAT, 0o600)
        except OSError as e:
            raise CacheError(f"failed to open cache file {filename}: {e}") from e

        with os.fdopen(fd, "r+b") as f:
            with self._locked(f, exclusive=True):
                try:
                    f.seek(0)
                    f.truncate()
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                except OSError as e:
                    raise CacheError(f"failed to write cache file {filename}: {e}") from e


class SQLiteMetadataCache(MetadataCache):
    """Single ``cache`` table in an embedded SQLite database"""

    cache_type = SQLITE_CACHE_TYPE

    def __init__(self, db_path: str, lock_timeout: float = 1.0):
        self.db_path = db_path
        parent = os.path.dirname(db_path)
        if parent:
            os.makedirs(parent, mode=0o775, exist_ok=True)

        logger.debug(f"Opening cache database {db_path}")
        # timeout bounds how long SQLite waits on another process's lock
        self._conn = sqlite3.connect(db_path, timeout=lock_timeout)
        with self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS cache ("
                " key TEXT NOT NULL PRIMARY KEY,"
                " data BLOB"
                ")"
            )

    def get(self, key: str) -> Optional[ImageMetadata]:
        try:
            row = self._conn.execute("SELECT data FROM cache WHERE key = ?", (key,)).fetchone()
        except sqlite3.OperationalError as e:
            raise CacheLockTimeoutError(f"unable to read cache entry {key}: {e}") from e

        if row is None:
            return None
        payload = row[0]
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        if payload is None:
            raise CacheDecodeError(f"cache entry {key} has no data")
        return ImageMetadata.decode(payload)

    def set(self, key: str, value: ImageMetadata) -> None:
        try:
            with self._conn:
                self._conn.execute(
                    "INSERT INTO cache (key, data) VALUES (?, ?) "
                    "ON CONFLICT(key) DO UPDATE SET data = excluded.data",
                    (key, sqlite3.Binary(value.encode())),
                )
        except sqlite3.OperationalError as e:
            raise CacheLockTimeoutError(f"unable to write cache entry {key}: {e}") from e

    def close(self) -> None:
        self._conn.close()


def open_metadata_cache(
    backend: str,
    cache_dir: str,
    lock_timeout: float = 1.0,
    poll_interval: float = 0.25,
) -> MetadataCache:
    """Create the configured cache backend under cache_dir

    Raises:
        ValueError: for an unknown backend name
    """
    if backend == DISK_CACHE_TYPE:
        return DiskMetadataCache(cache_dir, lock_timeout=lock_timeout, poll_interval=poll_interval)
    if backend == SQLITE_CACHE_TYPE:
        return SQLiteMetadataCache(os.path.join(cache_dir, SQLITE_FILENAME), lock_timeout=lock_timeout)
    raise ValueError(f"Unknown cache backend '{backend}'")
