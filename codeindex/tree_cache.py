"""
Tree Cache - Authoritative path -> FileRecord map.

Readers take an immutable snapshot (a MappingProxy over a dict that is
never mutated after publication); writers build a new dict and swap the
reference. Every effective mutation advances the revision, replaying an
event that changes nothing does not.

On-disk format (tree.cache):
    CODEINDEX-TREE
    {"schema_version": 1, "checksum": "<xxh64 of body>", "length": N, "metadata": {...}}
    <JSON body: list of FileRecord dicts>
"""

import json
import logging
import os
import tempfile
import time
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import CacheCorruption, PersistenceError, SchemaMismatch
from .hasher import ContentFingerprinter, aggregate_fingerprint, hash_bytes
from .models import ChangeEvent, ChangeType, FileRecord, TreeSnapshot
from .scanner import IgnoreDecision


logger = logging.getLogger(__name__)

MAGIC = b"CODEINDEX-TREE"
TREE_SCHEMA_VERSION = 1


class TreeCache:
    """
    Incrementally maintained workspace tree.

    Usage:
        cache = TreeCache(path, fingerprinter, is_ignored)
        cache.apply(ChangeEvent(ChangeType.MODIFIED, "src/a.py"))
        snapshot = cache.snapshot()
    """

    def __init__(
        self,
        path: Path,
        fingerprinter: ContentFingerprinter,
        is_ignored: IgnoreDecision,
    ):
        self.path = path
        self.fingerprinter = fingerprinter
        self.is_ignored = is_ignored
        self.metadata: dict = {}
        self._snapshot = TreeSnapshot(revision=0, records=MappingProxyType({}))

    def snapshot(self) -> TreeSnapshot:
        return self._snapshot

    @property
    def revision(self) -> int:
        return self._snapshot.revision

    def __len__(self) -> int:
        return len(self._snapshot)

    def get(self, path: str) -> Optional[FileRecord]:
        return self._snapshot.get(path)

    def _publish(self, records: Dict[str, FileRecord]):
        self._snapshot = TreeSnapshot(
            revision=self._snapshot.revision + 1,
            records=MappingProxyType(records),
        )

    def _admit(
        self,
        path: str,
        fingerprints: Optional[Mapping[str, Optional[FileRecord]]] = None,
    ) -> Optional[FileRecord]:
        """Fingerprint a path if the ignore decision lets it in, preferring a prefetched record."""
        if self.is_ignored(path):
            return None
        if fingerprints is not None and path in fingerprints:
            return fingerprints[path]
        return self.fingerprinter.fingerprint(path)

    def _apply_to(
        self,
        records: Dict[str, FileRecord],
        event: ChangeEvent,
        fingerprints: Optional[Mapping[str, Optional[FileRecord]]] = None,
    ) -> List[str]:
        """Apply one event to a working copy. Returns the paths that changed."""
        changed: List[str] = []

        if event.kind is ChangeType.RENAMED and event.old_path:
            changed.extend(self._remove_from(records, event.old_path))
            target_kind = ChangeType.CREATED
        else:
            target_kind = event.kind

        if target_kind is ChangeType.DELETED:
            changed.extend(self._remove_from(records, event.path))
            return changed

        record = self._admit(event.path, fingerprints)
        previous = records.get(event.path)
        if record is None:
            # Vanished before we could read it, or ignored
            if previous is not None:
                del records[event.path]
                changed.append(event.path)
            return changed

        if previous is not None and previous.same_content(record):
            if (previous.size, previous.mtime) != (record.size, record.mtime):
                # Touched without a content change: refresh stat, keep last_indexed
                records[event.path] = FileRecord(
                    path=record.path,
                    size=record.size,
                    mtime=record.mtime,
                    content_hash=record.content_hash,
                    last_indexed=previous.last_indexed,
                )
            return changed

        records[event.path] = record
        changed.append(event.path)
        return changed

    @staticmethod
    def _remove_from(records: Dict[str, FileRecord], path: str) -> List[str]:
        """Remove a file, or everything below a deleted directory."""
        removed = []
        if path in records:
            del records[path]
            removed.append(path)
        prefix = path.rstrip("/") + "/"
        for child in [p for p in records if p.startswith(prefix)]:
            del records[child]
            removed.append(child)
        return removed

    def apply(self, event: ChangeEvent) -> List[str]:
        """
        Apply one change event.

        Returns:
            Paths whose content changed (empty when the event was a no-op)
        """
        return self.apply_many([event])

    def apply_many(
        self,
        events: Iterable[ChangeEvent],
        fingerprints: Optional[Mapping[str, Optional[FileRecord]]] = None,
    ) -> List[str]:
        """
        Apply a batch of events with a single snapshot swap.

        Args:
            events: Change events in arrival order
            fingerprints: Records already computed for event paths (None
                for paths that are gone); other paths are fingerprinted inline
        """
        records = dict(self._snapshot.records)
        before = dict(records)
        changed: List[str] = []
        for event in events:
            changed.extend(self._apply_to(records, event, fingerprints))

        if records != before:
            self._publish(records)
        # A path created then deleted within one batch is still reported
        return list(dict.fromkeys(changed))

    async def apply_batch(self, events: Iterable[ChangeEvent]) -> List[str]:
        """apply_many() with the event paths fingerprinted on the hasher pool first."""
        events = list(events)
        wanted = [
            e.path for e in events
            if e.kind is not ChangeType.DELETED and not self.is_ignored(e.path)
        ]
        fingerprints = await self.fingerprinter.fingerprint_paths(wanted)
        return self.apply_many(events, fingerprints)

    def replace_all(self, records: Iterable[FileRecord]) -> Tuple[List[str], List[str]]:
        """
        Replace the whole tree with the result of a full scan.

        Returns:
            (changed_or_added_paths, removed_paths)
        """
        fresh: Dict[str, FileRecord] = {}
        current = self._snapshot.records
        for record in records:
            if self.is_ignored(record.path):
                continue
            previous = current.get(record.path)
            if previous is not None and previous.same_content(record):
                record = FileRecord(
                    path=record.path,
                    size=record.size,
                    mtime=record.mtime,
                    content_hash=record.content_hash,
                    last_indexed=previous.last_indexed,
                )
            fresh[record.path] = record

        changed = sorted(p for p, r in fresh.items() if not r.same_content(current.get(p)))
        removed = sorted(current.keys() - fresh.keys())

        if fresh != dict(current):
            self._publish(fresh)
        return changed, removed

    def mark_indexed(self, path: str, timestamp: Optional[float] = None) -> bool:
        """Record when a path was last indexed. Returns False for unknown paths."""
        return self.mark_indexed_many([path], timestamp) == 1

    def mark_indexed_many(self, paths: Iterable[str], timestamp: Optional[float] = None) -> int:
        """
        Record when paths were last indexed, with one snapshot swap.

        Returns:
            Number of known paths marked
        """
        current = self._snapshot.records
        known = [p for p in dict.fromkeys(paths) if p in current]
        if not known:
            return 0
        if timestamp is None:
            timestamp = time.time()
        records = dict(current)
        for path in known:
            record = records[path]
            records[path] = FileRecord(
                path=record.path,
                size=record.size,
                mtime=record.mtime,
                content_hash=record.content_hash,
                last_indexed=timestamp,
            )
        self._publish(records)
        return len(known)

    def clear(self):
        if self._snapshot.records:
            self._publish({})

    def directory_fingerprint(self, directory: str = "") -> str:
        """Aggregated fingerprint of every record below a directory."""
        prefix = directory.strip("/")
        prefix = prefix + "/" if prefix else ""
        return aggregate_fingerprint(
            (path, record.content_hash)
            for path, record in self._snapshot.records.items()
            if path.startswith(prefix)
        )

    def persist(self):
        """
        Write the cache atomically.

        Raises:
            PersistenceError: The cache directory is not writable
        """
        records = sorted(self._snapshot.records.values(), key=lambda r: r.path)
        body = json.dumps([r.to_dict() for r in records], separators=(",", ":")).encode("utf-8")
        header = {
            "schema_version": TREE_SCHEMA_VERSION,
            "checksum": hash_bytes(body),
            "length": len(body),
            "metadata": self.metadata,
        }
        payload = MAGIC + b"\n" + json.dumps(header, sort_keys=True).encode("utf-8") + b"\n" + body

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".tree-", suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, self.path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}") from e

        logger.debug(f"Persisted {len(records)} tree records to {self.path}")

    def load(self) -> bool:
        """
        Load the persisted cache, replacing the in-memory tree.

        Returns:
            False when no cache file exists

        Raises:
            CacheCorruption: Bad magic, header, length or checksum
            SchemaMismatch: Written by another schema version
        """
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            return False
        except OSError as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}") from e

        magic, _, rest = raw.partition(b"\n")
        if magic != MAGIC:
            raise CacheCorruption(self.path, "bad magic")

        header_line, sep, body = rest.partition(b"\n")
        if not sep:
            raise CacheCorruption(self.path, "truncated header")
        try:
            header = json.loads(header_line)
            version = int(header["schema_version"])
            checksum = str(header["checksum"])
            length = int(header["length"])
            metadata = dict(header.get("metadata") or {})
        except (ValueError, KeyError, TypeError) as e:
            raise CacheCorruption(self.path, f"unreadable header: {e}") from e

        if version != TREE_SCHEMA_VERSION:
            raise SchemaMismatch(
                f"Tree cache schema {version}, expected {TREE_SCHEMA_VERSION}"
            )
        if len(body) != length:
            raise CacheCorruption(self.path, f"length {len(body)} != {length}")
        if hash_bytes(body) != checksum:
            raise CacheCorruption(self.path, "checksum mismatch")

        try:
            records = [FileRecord.from_dict(item) for item in json.loads(body)]
        except (ValueError, KeyError, TypeError) as e:
            raise CacheCorruption(self.path, f"unreadable body: {e}") from e

        self.metadata = metadata
        self._publish({
            r.path: r for r in records
            if not r.ignored and not self.is_ignored(r.path)
        })
        logger.info(f"Loaded {len(self)} tree records from {self.path}")
        return True
