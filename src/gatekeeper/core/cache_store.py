"""
Cache stores: TTL-bounded, versioned byte blobs keyed by an opaque string.

Three backends satisfy the CacheStore protocol:
- MemoryCacheStore: in-process, LRU capacity eviction
- FileCacheStore: one binary file per key
- SqlCacheStore: cache_entries table through SQLAlchemy

Backend I/O errors raise StoreUnavailable; a miss is always None.
"""

import asyncio
import hashlib
import json
import re
import struct
import threading
import uuid
import zlib
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

import aiofiles
import aiofiles.os
import structlog
from sqlalchemy import delete, or_, select, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .clock import Clock, MonotonicClock, SystemClock
from .database import CACHE_KEY_MAX_LENGTH, cache_entries
from .exceptions import StoreUnavailable

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A stored payload and the facts needed to judge its freshness."""
    key: str
    payload: bytes
    stored_at: float
    ttl: float
    version: int

    @property
    def expires_at(self) -> float:
        return self.stored_at + self.ttl

    def is_fresh(self, now: float, version: int) -> bool:
        return self.version == version and now < self.expires_at


@runtime_checkable
class CacheStore(Protocol):
    """Protocol for cache storage backends."""

    async def get(self, key: str) -> Optional[CacheEntry]:
        """Return the fresh entry for key, or None."""
        ...

    async def put(self, key: str, payload: bytes, ttl: float) -> None:
        """Store payload with absolute expiry now + ttl, replacing any prior entry."""
        ...

    async def invalidate(self, key: str) -> bool:
        """Remove key regardless of TTL. True if an entry existed."""
        ...

    async def clear(self) -> int:
        """Remove every entry. Returns the number removed."""
        ...

    async def ping(self) -> None:
        """Raise StoreUnavailable if the backing store cannot be reached."""
        ...

    async def purge_expired(self) -> int:
        """Physically remove entries that can no longer be served. Returns the number removed."""
        ...


def build_cache_key(namespace: str, endpoint: str, params: Optional[Dict[str, Any]] = None) -> str:
    """
    Build a deterministic cache key for a logical request.

    Parameter order does not matter. The digest covers namespace, endpoint
    and params together, so keys differ whenever any of them differ.
    """
    canonical = json.dumps(
        [namespace, endpoint, params or {}],
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    digest = hashlib.sha256(canonical.encode("utf-8")).hexdigest()
    return f"{namespace}:{endpoint}:{digest}"


def key_fits(key: str) -> bool:
    """True if every store can hold key."""
    return len(key.encode("utf-8")) <= CACHE_KEY_MAX_LENGTH


class MemoryCacheStore:
    """
    In-process cache store.

    Entries beyond max_entries are evicted least recently used first.
    Stale entries are dropped when read.
    """

    def __init__(
        self,
        max_entries: int = 1024,
        namespace_version: int = 1,
        clock: Optional[Clock] = None,
    ) -> None:
        self.max_entries = max_entries
        self.namespace_version = namespace_version
        self.clock = clock or MonotonicClock()
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, key: str) -> Optional[CacheEntry]:
        now = self.clock.now()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not entry.is_fresh(now, self.namespace_version):
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return entry

    async def put(self, key: str, payload: bytes, ttl: float) -> None:
        entry = CacheEntry(
            key=key,
            payload=payload,
            stored_at=self.clock.now(),
            ttl=ttl,
            version=self.namespace_version,
        )
        with self._lock:
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted cache entry", key=evicted)

    async def invalidate(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    async def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    async def ping(self) -> None:
        return None

    async def purge_expired(self) -> int:
        now = self.clock.now()
        with self._lock:
            stale = [k for k, e in self._entries.items() if not e.is_fresh(now, self.namespace_version)]
            for key in stale:
                del self._entries[key]
            return len(stale)


class FileCacheStore:
    """
    File-backed cache store, one file per key.

    Binary layout:
    [4 bytes: magic][1 byte: format][8: stored_at][8: ttl][8: version]
    [4: key length][4: payload length][4: crc32 of key + payload][key][payload]

    The key is stored alongside the payload so a filename hash collision is
    detected instead of served. Files written in another format are misses.
    """

    MAGIC = b"GKCE"
    FORMAT = 2
    HEADER = struct.Struct("<4sBddqIII")
    SUFFIX = ".entry"

    def __init__(
        self,
        directory: Path,
        namespace_version: int = 1,
        clock: Optional[Clock] = None,
    ) -> None:
        self.directory = Path(directory)
        self.namespace_version = namespace_version
        self.clock = clock or SystemClock()
        self._ensure_directory()
        logger.info("File cache store initialized", directory=str(self.directory))

    def _ensure_directory(self) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Error creating cache directory", directory=str(self.directory), error=str(e))
            raise StoreUnavailable("file", f"Cannot create cache directory: {e}") from e

    def _path_for(self, key: str) -> Path:
        """
        Filesystem-safe name for a key.

        Format: {safe_prefix}_{sha256}.entry
        """
        safe_prefix = re.sub(r"[^a-zA-Z0-9_-]", "", key)[:32]
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.directory / f"{safe_prefix}_{digest}{self.SUFFIX}"

    def encode(self, entry: CacheEntry) -> bytes:
        key_bytes = entry.key.encode("utf-8")
        checksum = zlib.crc32(key_bytes + entry.payload)
        try:
            header = self.HEADER.pack(
                self.MAGIC,
                self.FORMAT,
                entry.stored_at,
                entry.ttl,
                entry.version,
                len(key_bytes),
                len(entry.payload),
                checksum,
            )
        except struct.error as e:
            raise StoreUnavailable("file", f"Cannot encode cache entry: {e}") from e
        return header + key_bytes + entry.payload

    def decode(self, data: bytes) -> Optional[CacheEntry]:
        """Parse a file body. Returns None for anything malformed."""
        if len(data) < self.HEADER.size:
            return None
        magic, fmt, stored_at, ttl, version, key_len, payload_len, checksum = self.HEADER.unpack_from(data)
        if magic != self.MAGIC or fmt != self.FORMAT:
            return None
        body = data[self.HEADER.size:]
        if len(body) != key_len + payload_len or zlib.crc32(body) != checksum:
            return None
        return CacheEntry(
            key=body[:key_len].decode("utf-8"),
            payload=body[key_len:],
            stored_at=stored_at,
            ttl=ttl,
            version=version,
        )

    async def _remove(self, path: Path) -> bool:
        try:
            await aiofiles.os.remove(path)
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StoreUnavailable("file", f"Cannot remove cache file: {e}") from e

    async def get(self, key: str) -> Optional[CacheEntry]:
        path = self._path_for(key)
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StoreUnavailable("file", f"Cannot read cache file: {e}") from e

        entry = self.decode(data)
        if entry is None:
            logger.warning("Corrupt cache file removed", path=str(path))
            await self._remove(path)
            return None
        if entry.key != key:
            return None
        if not entry.is_fresh(self.clock.now(), self.namespace_version):
            await self._remove(path)
            return None
        return entry

    async def put(self, key: str, payload: bytes, ttl: float) -> None:
        entry = CacheEntry(
            key=key,
            payload=payload,
            stored_at=self.clock.now(),
            ttl=ttl,
            version=self.namespace_version,
        )
        data = self.encode(entry)
        path = self._path_for(key)
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            try:
                await aiofiles.os.remove(tmp_path)
            except OSError:
                logger.debug("Temp cache file not removed", path=str(tmp_path))
            raise StoreUnavailable("file", f"Cannot write cache file: {e}") from e

    async def invalidate(self, key: str) -> bool:
        return await self._remove(self._path_for(key))

    async def clear(self) -> int:
        removed = 0
        try:
            paths = list(self.directory.glob(f"*{self.SUFFIX}"))
        except OSError as e:
            raise StoreUnavailable("file", f"Cannot list cache directory: {e}") from e
        for path in paths:
            if await self._remove(path):
                removed += 1
        return removed

    async def ping(self) -> None:
        probe = self.directory / ".health_check"
        try:
            async with aiofiles.open(probe, "w") as f:
                await f.write("ok")
            await aiofiles.os.remove(probe)
        except OSError as e:
            raise StoreUnavailable("file", f"Cache directory not writable: {e}") from e

    async def purge_expired(self) -> int:
        """Remove stale, corrupt and other-version files."""
        now = self.clock.now()
        try:
            paths = list(self.directory.glob(f"*{self.SUFFIX}"))
        except OSError as e:
            raise StoreUnavailable("file", f"Cannot list cache directory: {e}") from e

        removed = 0
        for path in paths:
            try:
                async with aiofiles.open(path, "rb") as f:
                    data = await f.read()
            except FileNotFoundError:
                continue
            except OSError as e:
                raise StoreUnavailable("file", f"Cannot read cache file: {e}") from e
            entry = self.decode(data)
            if entry is None or not entry.is_fresh(now, self.namespace_version):
                if await self._remove(path):
                    removed += 1
        return removed


class SqlCacheStore:
    """
    Cache store on the cache_entries table.

    Statements run in a worker thread so the event loop never blocks on the
    database driver.
    """

    def __init__(
        self,
        engine: Engine,
        namespace_version: int = 1,
        clock: Optional[Clock] = None,
    ) -> None:
        self.engine = engine
        self.namespace_version = namespace_version
        self.clock = clock or SystemClock()

    def _get(self, key: str, now: float) -> Optional[CacheEntry]:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(cache_entries).where(cache_entries.c.cache_key == key)
            ).first()
            if row is None:
                return None
            entry = CacheEntry(
                key=row.cache_key,
                payload=bytes(row.payload),
                stored_at=row.stored_at,
                ttl=row.ttl,
                version=row.version,
            )
            if not entry.is_fresh(now, self.namespace_version):
                conn.execute(delete(cache_entries).where(cache_entries.c.cache_key == key))
                return None
            return entry

    def _put(self, entry: CacheEntry) -> None:
        values = {
            "payload": entry.payload,
            "stored_at": entry.stored_at,
            "ttl": entry.ttl,
            "expires_at": entry.expires_at,
            "version": entry.version,
        }
        with self.engine.begin() as conn:
            result = conn.execute(
                update(cache_entries).where(cache_entries.c.cache_key == entry.key).values(**values)
            )
            if result.rowcount:
                return
        try:
            with self.engine.begin() as conn:
                conn.execute(cache_entries.insert().values(cache_key=entry.key, **values))
        except IntegrityError:
            # A concurrent writer inserted first; last write wins
            with self.engine.begin() as conn:
                conn.execute(
                    update(cache_entries).where(cache_entries.c.cache_key == entry.key).values(**values)
                )

    def _invalidate(self, key: str) -> bool:
        with self.engine.begin() as conn:
            result = conn.execute(delete(cache_entries).where(cache_entries.c.cache_key == key))
            return result.rowcount > 0

    def _clear(self) -> int:
        with self.engine.begin() as conn:
            return conn.execute(delete(cache_entries)).rowcount

    def _ping(self) -> None:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def _purge_expired(self, now: float) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                delete(cache_entries).where(
                    or_(cache_entries.c.expires_at <= now, cache_entries.c.version != self.namespace_version)
                )
            )
            return result.rowcount

    async def _run(self, fn: Any, *args: Any) -> Any:
        try:
            return await asyncio.to_thread(fn, *args)
        except SQLAlchemyError as e:
            raise StoreUnavailable("sql", f"Cache database error: {type(e).__name__}") from e

    async def get(self, key: str) -> Optional[CacheEntry]:
        return await self._run(self._get, key, self.clock.now())

    async def put(self, key: str, payload: bytes, ttl: float) -> None:
        entry = CacheEntry(
            key=key,
            payload=payload,
            stored_at=self.clock.now(),
            ttl=ttl,
            version=self.namespace_version,
        )
        await self._run(self._put, entry)

    async def invalidate(self, key: str) -> bool:
        return await self._run(self._invalidate, key)

    async def clear(self) -> int:
        return await self._run(self._clear)

    async def ping(self) -> None:
        await self._run(self._ping)

    async def purge_expired(self) -> int:
        """Physically delete entries whose TTL has passed or whose version is retired."""
        return await self._run(self._purge_expired, self.clock.now())
