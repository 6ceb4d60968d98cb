"""
Error Handling - Centralized error policies and custom exceptions.

This module defines how different error types should be handled throughout
the indexing pipeline, so a failure local to one file or chunk degrades that
file or chunk instead of failing a whole rebuild or query.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Optional, Union


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()       # Skip this item, continue processing
    RETRY = auto()      # Retry the operation (with backoff)
    DEGRADE = auto()    # Mark the chunk degraded, exclude it from semantic results
    REQUEUE = auto()    # Treat as a fresh change event
    REBUILD = auto()    # Discard persisted state and rebuild from a full scan
    ABORT = auto()      # Surface to the caller


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{file}: {error}"


class IndexingError(Exception):
    """Base exception for indexing errors."""
    pass


class ProviderError(IndexingError):
    """Embedding provider failure."""
    pass


class TransientProviderError(ProviderError):
    """Rate limit, timeout or server error; safe to retry."""
    pass


class PermanentProviderError(ProviderError):
    """Malformed or unsupported input; retrying will not help."""
    pass


class CacheCorruption(IndexingError):
    """A persisted cache failed header or checksum validation."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupted cache {path}: {reason}")


class SchemaMismatch(IndexingError):
    """Persisted stores were written by another schema version or embedding model."""
    pass


class CapacityExceeded(IndexingError):
    """A value does not fit the cache budget. Resolved internally, never raised to callers."""
    pass


class StaleWriteError(IndexingError):
    """A file changed between fingerprinting and reading."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"File changed during update: {path}")


class PersistenceError(IndexingError):
    """Unrecoverable I/O failure in the cache directory."""
    pass


class QueryCancelled(IndexingError):
    """The caller cancelled a query; partial results were discarded."""
    pass


class IndexStateError(IndexingError):
    """Illegal index state transition."""
    pass


class ToolArgumentError(IndexingError):
    """Invalid arguments passed to a cacheable tool."""
    pass


# Error type to policy mapping. Order matters: first isinstance match wins.
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    TransientProviderError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="Transient embedding failure: {file} - {error}"
    ),
    PermanentProviderError: ErrorPolicy(
        action=ErrorAction.DEGRADE,
        log_level=logging.WARNING,
        message_template="Embedding rejected, chunk degraded: {file} - {error}"
    ),
    CacheCorruption: ErrorPolicy(
        action=ErrorAction.REBUILD,
        log_level=logging.WARNING,
        message_template="Cache corrupted, rebuilding from scan: {file} - {error}"
    ),
    SchemaMismatch: ErrorPolicy(
        action=ErrorAction.REBUILD,
        log_level=logging.INFO,
        message_template="Index schema changed, full rebuild required: {error}"
    ),
    StaleWriteError: ErrorPolicy(
        action=ErrorAction.REQUEUE,
        log_level=logging.DEBUG,
        message_template="File changed mid-update, requeued: {file}"
    ),
    PersistenceError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Cache directory unusable: {file} - {error}"
    ),
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {file}"
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="File not found (possibly deleted): {file}"
    ),
    UnicodeDecodeError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Cannot decode file (binary?): {file}"
    ),
    IsADirectoryError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Expected file, got directory: {file}"
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="OS error reading file: {file} - {error}"
    ),
}


def handle_error(
    error: Exception,
    file_path: Optional[Union[Path, str]] = None,
    context: str = ""
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        file_path: Path to the file being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take (SKIP, RETRY, etc.)
    """
    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = p
            break

    # Default policy for unknown errors
    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.SKIP,
            log_level=logging.ERROR,
            message_template="Unexpected error: {file} - {error}"
        )

    file_str = str(file_path) if file_path else "<unknown>"
    message = policy.message_template.format(file=file_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action
