"""
In-memory registry of uploaded documents.

The registry is the single owner of every FileRecord. Request handlers and the
cleanup sweep share it, so:
- every read returns a snapshot (FileSummary), never the live record
- every mutation happens under one map lock, so readers never observe a
  half-applied update
- a record that is pinned (leased) by an in-flight operation is skipped by the
  expiry sweep and cannot be deleted

Leases come in two strengths. ``pin`` only protects the record from eviction,
which is enough for readers such as hashing and download. ``lease`` also holds
the record's exclusive lock, so two pipeline runs never mutate the same
document at once.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from pathlib import Path
from threading import Lock
import time
from typing import Any, AsyncIterator, Callable, Dict, Optional
from uuid import uuid4

from .exceptions import InvalidStateError, NotFoundError
from .models import DocumentMetadata, FileEvent, FileStatus, FileSummary, PipelineStage
from .path_guard import PathGuard

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = frozenset({"id", "name", "size", "mime_type", "created_at"})


@dataclass
class FileRecord:
    """
    Internal, mutable state of one accepted upload.

    Only FileRegistry touches instances of this class; everything else works
    with FileSummary snapshots.

    Attributes:
        id: Random unique identifier (hex UUID), never reused
        name: Original client filename
        size: Size in bytes at upload time
        mime_type: Declared content type at upload time
        path: Absolute path of the owned file inside the sandbox
        metadata: Current metadata bag
        created_at: Epoch seconds of creation, used for expiry
        status: Coarse lifecycle status
        stage: Position in the finalize state machine
        error: Message of the last failed stage, if any
        events: Chronological lifecycle events
    """

    id: str
    name: str
    size: int
    mime_type: str
    path: Path
    metadata: DocumentMetadata
    created_at: float
    status: FileStatus = FileStatus.UPLOADED
    stage: PipelineStage = PipelineStage.UPLOADED
    has_document_hash: bool = False
    has_encrypted_metadata: bool = False
    has_metadata_locks: bool = False
    has_encrypted_permissions: bool = False
    document_hash: Optional[str] = None
    error: Optional[str] = None
    events: list[FileEvent] = field(default_factory=list)
    pins: int = field(default=0, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def to_summary(self) -> FileSummary:
        return FileSummary(
            id=self.id,
            name=self.name,
            size=self.size,
            mime_type=self.mime_type,
            path=str(self.path),
            metadata=self.metadata.model_copy(deep=True),
            status=self.status,
            stage=self.stage,
            created_at=datetime.fromtimestamp(self.created_at, tz=timezone.utc),
            has_document_hash=self.has_document_hash,
            has_encrypted_metadata=self.has_encrypted_metadata,
            has_metadata_locks=self.has_metadata_locks,
            has_encrypted_permissions=self.has_encrypted_permissions,
            document_hash=self.document_hash,
            error=self.error,
            events=list(self.events),
        )


class FileRegistry:
    """
    Authoritative map of document id to FileRecord.

    Thread Safety:
        The map and every record field are only touched while holding
        ``_lock``. Critical sections never await, so the lock is safe to use
        from the event loop as well as from worker threads.
    """

    def __init__(self, guard: PathGuard, clock: Callable[[], float] = time.time) -> None:
        self.guard = guard
        self._clock = clock
        self._records: Dict[str, FileRecord] = {}
        self._lock = Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, file_id: object) -> bool:
        with self._lock:
            return file_id in self._records

    def create(
        self,
        name: str,
        size: int,
        mime_type: str,
        path: Path,
        metadata: DocumentMetadata,
    ) -> FileSummary:
        """
        Register a new record for a file that already sits in the sandbox.

        Raises:
            PathViolation: If ``path`` is outside the sandbox
        """
        resolved = self.guard.check(path)
        created_at = self._clock()
        record = FileRecord(
            id=uuid4().hex,
            name=name,
            size=size,
            mime_type=mime_type,
            path=resolved,
            metadata=metadata,
            created_at=created_at,
            events=[FileEvent(timestamp=datetime.now(timezone.utc), message="File uploaded and sanitized.")],
        )
        with self._lock:
            if any(existing.path == resolved for existing in self._records.values()):
                raise InvalidStateError(f"{resolved.name} is already owned by another record")
            self._records[record.id] = record
            summary = record.to_summary()
        logger.info(f"Registered file {record.id} ({name})")
        return summary

    def get(self, file_id: str) -> FileSummary:
        """
        Snapshot of one record.

        Raises:
            NotFoundError: If no record exists for ``file_id``
        """
        with self._lock:
            return self._require(file_id).to_summary()

    def list_files(self) -> list[FileSummary]:
        """Snapshots of all records, newest first."""
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.created_at, reverse=True)
            return [record.to_summary() for record in records]

    def update(self, file_id: str, **changes: Any) -> FileSummary:
        """
        Apply several field changes atomically and return the new snapshot.

        Raises:
            NotFoundError: If no record exists for ``file_id``
            ValueError: If a change targets an unknown or immutable field
            PathViolation: If a new ``path`` leaves the sandbox
        """
        for key in changes:
            if key in IMMUTABLE_FIELDS or key in ("pins", "lock", "events") or key not in FileRecord.__dataclass_fields__:
                raise ValueError(f"Field {key!r} cannot be updated")
        if "path" in changes:
            changes["path"] = self.guard.check(changes["path"])

        with self._lock:
            record = self._require(file_id)
            for key, value in changes.items():
                setattr(record, key, value)
            return record.to_summary()

    def append_event(self, file_id: str, message: str) -> None:
        event = FileEvent(timestamp=datetime.now(timezone.utc), message=message)
        with self._lock:
            self._require(file_id).events.append(event)

    def delete(self, file_id: str) -> FileSummary:
        """
        Remove a record. The caller owns deletion of the backing file.

        Raises:
            NotFoundError: If no record exists for ``file_id``
            InvalidStateError: If an operation currently holds the record
        """
        with self._lock:
            record = self._require(file_id)
            if record.pins:
                raise InvalidStateError(f"File {file_id} is busy")
            del self._records[file_id]
            summary = record.to_summary()
        logger.info(f"Removed file {file_id} from registry")
        return summary

    def is_busy(self, file_id: str) -> bool:
        with self._lock:
            return self._require(file_id).pins > 0

    def evict_expired(self, max_age: float, now: Optional[float] = None) -> list[FileSummary]:
        """
        Atomically remove every unpinned record older than ``max_age`` seconds.

        Returns:
            Snapshots of the evicted records so the caller can delete their files
        """
        current = self._clock() if now is None else now
        evicted: list[FileSummary] = []
        with self._lock:
            for file_id, record in list(self._records.items()):
                if current - record.created_at <= max_age:
                    continue
                if record.pins:
                    logger.debug(f"Skipping busy file {file_id} during expiry")
                    continue
                del self._records[file_id]
                evicted.append(record.to_summary())
        return evicted

    @asynccontextmanager
    async def pin(self, file_id: str) -> AsyncIterator[FileSummary]:
        """Protect a record from eviction and deletion for the duration of the block."""
        record = self._acquire_pin(file_id)
        try:
            yield self.get(file_id)
        finally:
            self._release_pin(record)

    @asynccontextmanager
    async def lease(self, file_id: str) -> AsyncIterator[FileSummary]:
        """
        Pin a record and hold its exclusive lock for the duration of the block.

        Waiters queue on the record lock; each receives a fresh snapshot once
        it holds the lock.
        """
        record = self._acquire_pin(file_id)
        try:
            async with record.lock:
                yield self.get(file_id)
        finally:
            self._release_pin(record)

    def hold(self, file_id: str) -> Callable[[], None]:
        """
        Pin a record until the returned release function is called.

        For holders whose lifetime is not a single ``async with`` block, such
        as a response stream. Calling release more than once is a no-op.
        """
        record = self._acquire_pin(file_id)
        released = False

        def release() -> None:
            nonlocal released
            with self._lock:
                if released:
                    return
                released = True
                record.pins -= 1

        return release

    def _acquire_pin(self, file_id: str) -> FileRecord:
        with self._lock:
            record = self._require(file_id)
            record.pins += 1
            return record

    def _release_pin(self, record: FileRecord) -> None:
        with self._lock:
            record.pins -= 1

    def _require(self, file_id: str) -> FileRecord:
        record = self._records.get(file_id)
        if record is None:
            raise NotFoundError(f"File {file_id} not found")
        return record
