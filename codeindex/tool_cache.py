"""
Tool Result Cache - Memoization for deterministic tool calls.

Features:
- Content-addressed keys: operation + arguments + dependency fingerprints
- Lazy TTL expiry, checked at lookup
- LRU eviction against a byte budget (OrderedDict, O(1) per operation)
- Single-flight: concurrent lookups for a cold key share one computation
- Prefix invalidation over workspace-relative dependency paths
- Optional SQLite backing store (DiskResultStore) with TTL pruning on load
  and its own byte budget, so JSON results survive restarts
"""

import asyncio
import json
import logging
import sqlite3
import sys
import time
from collections import OrderedDict
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

import xxhash

from .config import ToolCacheConfig
from .errors import CacheCorruption, CapacityExceeded, PersistenceError, handle_error
from .models import CacheEntry, CacheLookup, ToolCacheStatus


logger = logging.getLogger(__name__)


def _canonical(value: Any) -> Any:
    """Recursively sort mappings and sets so equal arguments serialize equally."""
    if isinstance(value, Mapping):
        return {str(k): _canonical(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}
    if isinstance(value, (set, frozenset)):
        return sorted(_canonical(v) for v in value)
    if isinstance(value, (list, tuple)):
        return [_canonical(v) for v in value]
    return value


def build_tool_cache_key(
    operation: str,
    args: Mapping[str, Any],
    fingerprints: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Content-addressed cache key.

    Args:
        operation: Tool name, e.g. "read_file"
        args: Tool arguments
        fingerprints: dependency path -> content fingerprint
    """
    payload = json.dumps(
        {
            "op": operation,
            "args": _canonical(args),
            "deps": _canonical(fingerprints or {}),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return xxhash.xxh3_128_hexdigest(payload.encode("utf-8"))


def estimate_size(value: Any) -> int:
    """Approximate resident size of a cached value in bytes."""
    if isinstance(value, (bytes, bytearray)):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    if isinstance(value, (list, tuple)):
        return sys.getsizeof(value) + sum(estimate_size(v) for v in value)
    if isinstance(value, Mapping):
        return sys.getsizeof(value) + sum(
            estimate_size(k) + estimate_size(v) for k, v in value.items()
        )
    return len(repr(value))


def paths_intersect(dependency: str, prefix: str) -> bool:
    """True when either path is a path prefix of the other ("" is the workspace root)."""
    dep = dependency.strip("/")
    pre = prefix.strip("/")
    if not dep or not pre or dep == pre:
        return True
    return dep.startswith(pre + "/") or pre.startswith(dep + "/")


class DiskResultStore:
    """
    SQLite backing store so tool results outlive the process.

    Only JSON-serializable values are persisted. Expired rows are pruned
    by prune_expired() (run when a ToolResultCache opens the store) and the
    byte budget is enforced on disk by evicting the least recently accessed
    rows. Times are wall-clock seconds.
    """

    def __init__(self, db_path: Path, max_bytes: int, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.max_bytes = max_bytes
        self.clock = clock
        self.evictions = 0
        self._conn: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        if self._conn is None:
            try:
                self._conn = sqlite3.connect(str(self.db_path))
                self._conn.row_factory = sqlite3.Row
                self._conn.execute("PRAGMA journal_mode = WAL")
                self._conn.execute("PRAGMA synchronous = NORMAL")
                self._conn.executescript("""
                    CREATE TABLE IF NOT EXISTS results (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        size_bytes INTEGER NOT NULL,
                        created_at REAL NOT NULL,
                        last_access REAL NOT NULL,
                        ttl REAL NOT NULL,
                        dependencies TEXT NOT NULL
                    );

                    CREATE INDEX IF NOT EXISTS idx_results_access ON results(last_access);

                    CREATE TABLE IF NOT EXISTS counters (
                        name TEXT PRIMARY KEY,
                        value INTEGER NOT NULL
                    );
                """)
                self._conn.commit()
            except sqlite3.DatabaseError as e:
                if self._conn is not None:
                    self._conn.close()
                self._conn = None
                raise CacheCorruption(self.db_path, str(e)) from e
        return self._conn

    def prune_expired(self) -> int:
        """Delete expired rows. Returns how many were removed."""
        conn = self._get_connection()
        try:
            with conn:
                cursor = conn.execute(
                    "DELETE FROM results WHERE ttl <= 0 OR ? - created_at > ttl", (self.clock(),)
                )
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot prune {self.db_path}: {e}") from e
        if cursor.rowcount:
            logger.info(f"Pruned {cursor.rowcount} expired tool results from {self.db_path}")
        return cursor.rowcount

    def get(self, key: str) -> Optional[CacheEntry]:
        """A live entry, or None. Expired rows are deleted on sight."""
        conn = self._get_connection()
        now = self.clock()
        try:
            with conn:
                row = conn.execute("SELECT * FROM results WHERE key = ?", (key,)).fetchone()
                if row is None:
                    return None
                if row["ttl"] <= 0 or now - row["created_at"] > row["ttl"]:
                    conn.execute("DELETE FROM results WHERE key = ?", (key,))
                    return None
                conn.execute("UPDATE results SET last_access = ? WHERE key = ?", (now, key))
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot read {self.db_path}: {e}") from e

        try:
            value = json.loads(row["value"])
            dependencies = frozenset(json.loads(row["dependencies"]))
        except (ValueError, TypeError) as e:
            raise CacheCorruption(self.db_path, f"unreadable result {key[:12]}: {e}") from e
        return CacheEntry(
            key=key,
            value=value,
            size_bytes=row["size_bytes"],
            created_at=row["created_at"],
            ttl=row["ttl"],
            dependencies=dependencies,
        )

    def put(self, key: str, value: Any, ttl: float, dependencies: Iterable[str] = ()) -> bool:
        """
        Persist a value, evicting least recently accessed rows to fit.

        Returns:
            False when the value is not JSON-serializable, expires
            immediately or exceeds the budget on its own
        """
        try:
            encoded = json.dumps(value, separators=(",", ":"))
        except (TypeError, ValueError):
            logger.debug(f"Not persisting {key[:12]}: value is not JSON-serializable")
            return False
        size = len(encoded.encode("utf-8"))
        if ttl <= 0 or size > self.max_bytes:
            return False

        conn = self._get_connection()
        now = self.clock()
        try:
            with conn:
                conn.execute("DELETE FROM results WHERE key = ?", (key,))
                total = conn.execute("SELECT COALESCE(SUM(size_bytes), 0) FROM results").fetchone()[0]
                if total + size > self.max_bytes:
                    self._evict(conn, total + size - self.max_bytes)
                conn.execute(
                    """
                    INSERT INTO results (key, value, size_bytes, created_at, last_access, ttl, dependencies)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (key, encoded, size, now, now, ttl, json.dumps(sorted(dependencies))),
                )
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot write {self.db_path}: {e}") from e
        return True

    def _evict(self, conn: sqlite3.Connection, needed: int):
        freed = 0
        doomed = []
        for row in conn.execute("SELECT key, size_bytes FROM results ORDER BY last_access, key"):
            if freed >= needed:
                break
            doomed.append((row["key"],))
            freed += row["size_bytes"]
        conn.executemany("DELETE FROM results WHERE key = ?", doomed)
        self.evictions += len(doomed)
        logger.debug(f"Evicted {len(doomed)} persisted tool results ({freed} bytes)")

    def remove_dependent(self, path_prefix: str) -> List[str]:
        """Delete rows whose dependencies intersect ``path_prefix``. Returns their keys."""
        conn = self._get_connection()
        doomed: List[str] = []
        try:
            with conn:
                for row in conn.execute("SELECT key, dependencies FROM results").fetchall():
                    try:
                        dependencies = json.loads(row["dependencies"])
                    except ValueError:
                        dependencies = [""]     # Unreadable: treat as depending on everything
                    if any(paths_intersect(dep, path_prefix) for dep in dependencies):
                        doomed.append(row["key"])
                conn.executemany("DELETE FROM results WHERE key = ?", [(key,) for key in doomed])
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot invalidate {self.db_path}: {e}") from e
        return doomed

    def clear(self):
        conn = self._get_connection()
        try:
            with conn:
                conn.execute("DELETE FROM results")
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot clear {self.db_path}: {e}") from e

    def record_lookups(self, hits: int, misses: int):
        """Add one process's lookup counts to the lifetime totals."""
        conn = self._get_connection()
        try:
            with conn:
                conn.executemany(
                    """
                    INSERT INTO counters (name, value) VALUES (?, ?)
                    ON CONFLICT(name) DO UPDATE SET value = value + excluded.value
                    """,
                    [("hits", hits), ("misses", misses)],
                )
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot write {self.db_path}: {e}") from e

    def lookup_counts(self) -> Tuple[int, int]:
        """Lifetime (hits, misses) recorded by closed caches."""
        conn = self._get_connection()
        try:
            counts = dict(conn.execute("SELECT name, value FROM counters").fetchall())
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot read {self.db_path}: {e}") from e
        return counts.get("hits", 0), counts.get("misses", 0)

    def stats(self) -> Tuple[int, int]:
        """(entries, total bytes)."""
        conn = self._get_connection()
        try:
            row = conn.execute("SELECT COUNT(*), COALESCE(SUM(size_bytes), 0) FROM results").fetchone()
        except sqlite3.DatabaseError as e:
            raise PersistenceError(f"Cannot read {self.db_path}: {e}") from e
        return row[0], row[1]

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None


class _InFlight:
    """Marker for a computation in progress. Pinned: never evicted."""

    def __init__(self, loop: asyncio.AbstractEventLoop):
        self.future: asyncio.Future = loop.create_future()
        self.invalidated = False
        self.waiters = 0
        self.dependencies: Optional[Set[str]] = None  # Unknown until declared or stored


class ToolResultCache:
    """
    Bounded memoization cache.

    Usage:
        result = await cache.lookup(key)
        if result.hit:
            return result.value
        if result.owner:
            try:
                value = compute()
            except Exception as e:
                cache.abandon(key, e)
                raise
            cache.store(key, value, ttl=60, dependencies={"src/a.py"})

    With a ``backing`` store, memory misses fall through to disk and stored
    values are written through. A backing store that fails is dropped and
    the cache carries on in memory.
    """

    def __init__(
        self,
        config: ToolCacheConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        backing: Optional[DiskResultStore] = None,
    ):
        self.config = config or ToolCacheConfig()
        self.clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._in_flight: Dict[str, _InFlight] = {}
        self._total_bytes = 0
        self.backing = backing

        self.hits = 0
        self.misses = 0
        self.stores = 0
        self.evictions = 0

        if self.backing is not None:
            self._backing_call(self.backing.prune_expired)

    def _backing_call(self, operation: Callable[..., Any], *args, default: Any = None) -> Any:
        """Run a backing store operation; on failure detach the store and return ``default``."""
        if self.backing is None:
            return default
        try:
            return operation(*args)
        except (CacheCorruption, PersistenceError) as e:
            handle_error(e, self.backing.db_path, "tool cache")
            logger.warning("Tool result cache continues in memory only")
            self.backing.close()
            self.backing = None
            return default

    def _restore(self, key: str) -> Optional[CacheEntry]:
        """Bring a persisted entry into memory, converting its remaining lifetime to this clock."""
        if self.backing is None:
            return None
        stored = self._backing_call(self.backing.get, key)
        if stored is None:
            return None
        remaining = stored.ttl - (self.backing.clock() - stored.created_at)
        if remaining <= 0:
            return None
        size = estimate_size(stored.value)
        try:
            self._make_room(size)
        except CapacityExceeded:
            return None
        entry = CacheEntry(
            key=key,
            value=stored.value,
            size_bytes=size,
            created_at=self.clock(),
            ttl=remaining,
            dependencies=stored.dependencies,
        )
        self._entries[key] = entry
        self._total_bytes += entry.size_bytes
        return entry

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self.clock())

    def is_in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def lookup(self, key: str) -> CacheLookup:
        """
        Look up a key.

        Returns a hit; or waits for an in-flight computation of the same key;
        or, on a cold miss, installs an in-flight marker and returns
        ``owner=True``: the caller must then store() or abandon() the key.
        """
        while True:
            entry = self._entries.get(key)
            if entry is not None:
                if entry.is_expired(self.clock()):
                    self._drop(key)
                else:
                    self._entries.move_to_end(key)
                    self.hits += 1
                    return CacheLookup(hit=True, value=entry.value)

            marker = self._in_flight.get(key)
            if marker is None and self.config.enabled:
                restored = self._restore(key)
                if restored is not None:
                    self.hits += 1
                    return CacheLookup(hit=True, value=restored.value)
            if marker is None:
                self.misses += 1
                if not self.config.enabled:
                    return CacheLookup(hit=False, owner=True)
                self._in_flight[key] = _InFlight(asyncio.get_running_loop())
                return CacheLookup(hit=False, owner=True)

            marker.waiters += 1
            try:
                value = await asyncio.shield(marker.future)
            except Exception:
                # Owner failed: retry the lookup, possibly becoming the new owner
                continue
            finally:
                marker.waiters -= 1
            self.hits += 1
            return CacheLookup(hit=True, value=value)

    def store(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        dependencies: Iterable[str] = (),
    ) -> bool:
        """
        Store a value and resolve anyone waiting on the key.

        Returns:
            True if the value became resident
        """
        marker = self._in_flight.pop(key, None)
        if marker is not None and not marker.future.done():
            marker.future.set_result(value)

        if not self.config.enabled:
            return False
        if marker is not None and marker.invalidated:
            logger.debug(f"Not storing {key[:12]}: dependencies invalidated mid-flight")
            return False

        ttl = self.config.default_ttl_s if ttl is None else ttl
        size = estimate_size(value)
        self._drop(key)
        try:
            self._make_room(size)
        except CapacityExceeded as e:
            logger.debug(str(e))
            return False

        entry = CacheEntry(
            key=key,
            value=value,
            size_bytes=size,
            created_at=self.clock(),
            ttl=ttl,
            dependencies=frozenset(d.strip("/") for d in dependencies),
        )
        self._entries[key] = entry
        self._total_bytes += size
        self.stores += 1
        if self.backing is not None:
            self._backing_call(self.backing.put, key, value, ttl, entry.dependencies)
        return True

    def abandon(self, key: str, error: Optional[BaseException] = None):
        """Release an in-flight marker whose computation failed."""
        marker = self._in_flight.pop(key, None)
        if marker is None or marker.future.done():
            return
        marker.future.set_exception(error or RuntimeError(f"Computation for {key} abandoned"))
        # Waiters retry; nobody else should see this exception as unretrieved
        marker.future.exception()

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        dependencies: Iterable[str] = (),
    ) -> Any:
        """Return the cached value or compute it exactly once across concurrent callers."""
        while True:
            result = await self.lookup(key)
            if result.hit:
                return result.value
            if result.owner:
                break

        marker = self._in_flight.get(key)
        if marker is not None:
            marker.dependencies = {d.strip("/") for d in dependencies}

        try:
            value = await compute()
        except BaseException as e:
            self.abandon(key, e if isinstance(e, Exception) else None)
            raise
        self.store(key, value, ttl=ttl, dependencies=dependencies)
        return value

    def invalidate(self, path_prefix: str = "") -> int:
        """
        Drop entries depending on anything under ``path_prefix``.

        In-flight computations over the prefix still answer their waiters
        but their results are not stored.

        Returns:
            Number of entries dropped
        """
        doomed = {
            key for key, entry in self._entries.items()
            if any(paths_intersect(dep, path_prefix) for dep in entry.dependencies)
        }
        for key in doomed:
            self._drop(key)
        for marker in self._in_flight.values():
            if marker.dependencies is None or any(
                paths_intersect(dep, path_prefix) for dep in marker.dependencies
            ):
                marker.invalidated = True
        if self.backing is not None:
            doomed.update(self._backing_call(self.backing.remove_dependent, path_prefix, default=[]))

        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cached results under '{path_prefix or '/'}'")
        return len(doomed)

    def clear(self):
        """Drop every resident and persisted entry."""
        self._entries.clear()
        self._total_bytes = 0
        if self.backing is not None:
            self._backing_call(self.backing.clear)

    def close(self):
        """Release memory; persisted entries and lookup counts stay on disk for the next process."""
        self._entries.clear()
        self._total_bytes = 0
        if self.backing is not None:
            self._backing_call(self.backing.record_lookups, self.hits, self.misses)
        if self.backing is not None:
            self.backing.close()
            self.backing = None

    @property
    def hit_rate(self) -> Optional[float]:
        lookups = self.hits + self.misses
        return self.hits / lookups if lookups else None

    def status(self) -> ToolCacheStatus:
        persisted_entries, persisted_bytes = (0, 0)
        if self.backing is not None:
            persisted_entries, persisted_bytes = self._backing_call(self.backing.stats, default=(0, 0))
        return ToolCacheStatus(
            enabled=self.config.enabled,
            entries=len(self._entries),
            total_bytes=self._total_bytes,
            max_bytes=self.config.max_bytes,
            in_flight=len(self._in_flight),
            hits=self.hits,
            misses=self.misses,
            stores=self.stores,
            evictions=self.evictions,
            hit_rate=self.hit_rate,
            persisted_entries=persisted_entries,
            persisted_bytes=persisted_bytes,
        )

    def _drop(self, key: str):
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._total_bytes -= entry.size_bytes

    def _make_room(self, size: int):
        """Evict least recently used entries until ``size`` more bytes fit."""
        budget = self.config.max_bytes
        if size > budget:
            raise CapacityExceeded(f"Value of {size} bytes exceeds cache budget of {budget}")

        while self._total_bytes + size > budget and self._entries:
            # In-flight keys live in _in_flight, not _entries, so they are never candidates
            key, entry = self._entries.popitem(last=False)
            self._total_bytes -= entry.size_bytes
            self.evictions += 1
            logger.debug(f"Evicted {key[:12]} ({entry.size_bytes} bytes)")
