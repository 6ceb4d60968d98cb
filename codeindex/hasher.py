"""
Hasher - Content fingerprinting using xxHash.

Uses xxHash (2.5GB/s) instead of SHA256 (500MB/s) for fast change
detection. A fingerprint is (size, mtime, content hash); the content hash
alone decides whether anything downstream (chunks, vectors, cached tool
results) must be recomputed.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import xxhash

from .config import ScanConfig
from .errors import handle_error
from .models import FileInfo, FileRecord


logger = logging.getLogger(__name__)

READ_BLOCK = 65536


def hash_bytes(data: bytes) -> str:
    """xxh64 hex digest of raw bytes."""
    return xxhash.xxh64_hexdigest(data)


def hash_text(text: str) -> str:
    """xxh64 hex digest of UTF-8 text."""
    return xxhash.xxh64_hexdigest(text.encode("utf-8"))


def hash_file(path: Path) -> str:
    """Hash file bytes, reading in 64KB blocks for memory efficiency."""
    hasher = xxhash.xxh64()
    with open(path, "rb") as f:
        while block := f.read(READ_BLOCK):
            hasher.update(block)
    return hasher.hexdigest()


def chunk_identifier(path: str, start_byte: int, end_byte: int, content_hash: str) -> str:
    """Content-addressed chunk id: stable while path, range and content are."""
    return xxhash.xxh3_128_hexdigest(f"{path}:{start_byte}-{end_byte}:{content_hash}".encode("utf-8"))


def workspace_fingerprint(workspace_root: Path) -> str:
    return xxhash.xxh64_hexdigest(str(workspace_root).encode("utf-8"))


def aggregate_fingerprint(children: Iterable[Tuple[str, str]]) -> str:
    """
    Fingerprint of a directory from its children's (name, fingerprint) pairs.

    Order-independent: children are sorted before hashing.
    """
    hasher = xxhash.xxh64()
    for name, child in sorted(children):
        hasher.update(name.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(child.encode("utf-8"))
        hasher.update(b"\n")
    return hasher.hexdigest()


class ContentFingerprinter:
    """
    Computes FileRecords for workspace files.

    Hashing runs in a thread pool so neither a large rebuild nor an
    incremental batch blocks the event loop. fingerprint() itself is
    synchronous and is what the pool runs.
    """

    def __init__(self, workspace_root: Path, config: ScanConfig | None = None):
        self.workspace_root = workspace_root
        self.config = config or ScanConfig()
        self._executor: ThreadPoolExecutor | None = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.hasher_concurrency,
                thread_name_prefix="hasher"
            )
        return self._executor

    def absolute(self, rel_path: str) -> Path:
        return self.workspace_root / rel_path

    def fingerprint(self, rel_path: str) -> Optional[FileRecord]:
        """
        Fingerprint one file.

        Returns None when the path no longer exists or is not a regular file.
        """
        path = self.absolute(rel_path)
        try:
            stat = path.stat()
            if not path.is_file():
                return None
            content_hash = hash_file(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            handle_error(e, path, "fingerprint")
            return None

        return FileRecord(
            path=rel_path,
            size=stat.st_size,
            mtime=stat.st_mtime,
            content_hash=content_hash,
        )

    async def fingerprint_files(
        self,
        files: List[FileInfo],
        known: Optional[Mapping[str, FileRecord]] = None,
    ) -> List[FileRecord]:
        """
        Fingerprint multiple files in parallel.

        Files whose size and mtime match a known record reuse its hash
        without reading the file again.

        Args:
            files: Scanner output
            known: Previous records (e.g. from the tree cache)

        Returns:
            FileRecords for every file that could be read
        """
        if not files:
            return []

        known = known or {}
        loop = asyncio.get_running_loop()
        executor = self._get_executor()

        reused: List[FileRecord] = []
        to_hash: List[FileInfo] = []
        for info in files:
            previous = known.get(info.path)
            if previous and previous.size == info.size and previous.mtime == info.mtime:
                reused.append(previous)
            else:
                to_hash.append(info)

        tasks = [
            loop.run_in_executor(executor, self.fingerprint, info.path)
            for info in to_hash
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        hashed: List[FileRecord] = []
        for result in results:
            if isinstance(result, FileRecord):
                hashed.append(result)
            elif isinstance(result, Exception):
                handle_error(result, None, "fingerprint_files")

        logger.info(f"Fingerprinted {len(files)} files: {len(reused)} unchanged, {len(hashed)} hashed")
        return reused + hashed

    async def fingerprint_paths(self, paths: Iterable[str]) -> Dict[str, Optional[FileRecord]]:
        """Fingerprint paths on the pool. Paths that are gone map to None."""
        paths = list(dict.fromkeys(paths))
        if not paths:
            return {}
        loop = asyncio.get_running_loop()
        executor = self._get_executor()
        results = await asyncio.gather(
            *(loop.run_in_executor(executor, self.fingerprint, path) for path in paths)
        )
        return dict(zip(paths, results))

    def close(self):
        """Shutdown the thread pool."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
