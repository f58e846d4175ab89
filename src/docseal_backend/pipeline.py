"""
Per-document processing pipeline.

This module drives every document through its stages:
- sanitize, once, at upload time (no record exists until it succeeds)
- metadata merge, any number of times, in memory only
- finalize: metadata write -> encrypt -> hash, strictly in that order

Finalize is an explicit state machine per document::

    uploaded -> metadata-writing -> encrypting -> hashing -> processed
                      \\                 \\             \\
                       +--------------> failed <-------+

A failed document may be finalized again; a processed one may not. Each stage
finishes its filesystem side effects (tools write to a derived path which then
atomically replaces the document) before the next stage starts. Nothing is
retried automatically.

Concurrency:
    Finalize and metadata saves hold the record's exclusive lease, so stages of
    one document never overlap and the cleanup sweep never evicts a document
    mid-run. A pipeline-wide semaphore bounds how many tool runs (sanitize or
    finalize) execute at once across all documents.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import BinaryIO, Callable, Dict, FrozenSet, Optional, Tuple

from .exceptions import DocSealError, InternalError, InvalidStateError, ValidationError
from .hashing import DEFAULT_ALGORITHM, HashingService
from .models import (
    DocumentMetadata,
    FileStatus,
    FileSummary,
    FinalizeResult,
    HashScope,
    PipelineStage,
    SecurityAction,
)
from .path_guard import PathGuard
from .process_runner import ProcessRunner
from .registry import FileRegistry
from .tools import ToolCommands, generate_owner_credential, metadata_arguments
from .upload_gate import UploadHandle
from .utils import remove_quietly, split_extension

logger = logging.getLogger(__name__)

DOWNLOAD_CHUNK_BYTES = 256 * 1024

TRANSITIONS: Dict[PipelineStage, FrozenSet[PipelineStage]] = {
    PipelineStage.UPLOADED: frozenset({PipelineStage.METADATA_WRITING}),
    PipelineStage.METADATA_WRITING: frozenset({PipelineStage.ENCRYPTING, PipelineStage.FAILED}),
    PipelineStage.ENCRYPTING: frozenset({PipelineStage.HASHING, PipelineStage.FAILED}),
    PipelineStage.HASHING: frozenset({PipelineStage.PROCESSED, PipelineStage.FAILED}),
    PipelineStage.FAILED: frozenset({PipelineStage.METADATA_WRITING}),
    PipelineStage.PROCESSED: frozenset(),
}

# Diagnostic flag toggles exposed by /api/security. They do not touch the file.
SECURITY_ACTIONS: Dict[SecurityAction, Tuple[str, bool, str]] = {
    SecurityAction.ENCRYPT_PERMISSIONS: ("has_encrypted_permissions", True, "Permissions encrypted."),
    SecurityAction.APPLY_METADATA_LOCKS: ("has_metadata_locks", True, "Metadata locks applied."),
    SecurityAction.ENCRYPT_METADATA: ("has_encrypted_metadata", True, "Metadata encrypted."),
    SecurityAction.DECRYPT_METADATA: ("has_encrypted_metadata", False, "Metadata decrypted."),
}


def default_metadata(filename: str, author: str) -> DocumentMetadata:
    """Initial metadata for a fresh upload, derived from its filename."""
    stem, _ = split_extension(filename)
    return DocumentMetadata(
        basic={
            "title": stem,
            "description": f"Uploaded document {filename}",
            "author": author,
            "keywords": ["pdf"],
        },
    )


class DownloadStream:
    """
    Async iterator over the chunks of a pinned document file.

    The file handle and the record pin are released exactly once: when the
    file is exhausted, on a read error, on ``aclose`` or when the stream is
    garbage collected without ever being iterated.
    """

    def __init__(self, handle: BinaryIO, release: Callable[[], None], chunk_size: int = DOWNLOAD_CHUNK_BYTES) -> None:
        self._handle = handle
        self._release = release
        self._chunk_size = chunk_size
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def __aiter__(self) -> "DownloadStream":
        return self

    async def __anext__(self) -> bytes:
        if self._closed:
            raise StopAsyncIteration
        try:
            chunk = await asyncio.to_thread(self._handle.read, self._chunk_size)
        except BaseException:
            self.close()
            raise
        if not chunk:
            self.close()
            raise StopAsyncIteration
        return chunk

    async def aclose(self) -> None:
        self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._handle.close()
        finally:
            self._release()

    def __del__(self) -> None:
        self.close()


class DocumentPipeline:
    """
    Orchestrates the stages of every document against the shared registry.

    Attributes:
        registry: Owner of all records
        guard: Sandbox confinement for derived filenames
        runner: Executes external tools
        hasher: Computes document digests
        commands: Builds tool argument lists
        default_author: Author used when an upload does not name one
    """

    def __init__(
        self,
        registry: FileRegistry,
        guard: PathGuard,
        runner: ProcessRunner,
        hasher: HashingService,
        commands: ToolCommands,
        max_concurrent: int = 4,
        default_author: str = "DocSeal",
    ) -> None:
        self.registry = registry
        self.guard = guard
        self.runner = runner
        self.hasher = hasher
        self.commands = commands
        self.default_author = default_author
        self.max_concurrent = max_concurrent
        self._slots = asyncio.Semaphore(max_concurrent)

    async def ingest(self, handle: UploadHandle, author: Optional[str] = None) -> FileSummary:
        """
        Sanitize a stored upload and register it.

        On any failure both the raw upload and the sanitizer output are
        deleted and no record is created.

        Raises:
            ToolFailure: If the sanitizer fails
            PathViolation: If a derived path leaves the sandbox
        """
        sanitized: Optional[Path] = None
        try:
            sanitized = self.guard.derive(handle.path, "sanitized")
            async with self._slots:
                await self.runner.run(self.commands.sanitize(handle.path, sanitized))
            if not sanitized.is_file():
                raise InternalError("Sanitizer produced no output")
            os.replace(sanitized, handle.path)
            return self.registry.create(
                name=handle.name,
                size=handle.size,
                mime_type=handle.mime_type,
                path=handle.path,
                metadata=default_metadata(handle.name, (author or "").strip() or self.default_author),
            )
        except BaseException:
            if sanitized is not None:
                remove_quietly(sanitized)
            if self.guard.contains(handle.path):
                remove_quietly(handle.path)
            logger.warning(f"Upload {handle.name!r} discarded after a failed sanitize")
            raise

    async def save_metadata(self, file_id: str, metadata: DocumentMetadata) -> FileSummary:
        """Replace a record's metadata wholesale. No file I/O."""
        async with self.registry.lease(file_id):
            self.registry.update(file_id, metadata=metadata.model_copy(deep=True))
            self.registry.append_event(file_id, "Metadata saved.")
            summary = self.registry.get(file_id)
        logger.info(f"Metadata saved for file {file_id}")
        return summary

    async def finalize(self, file_id: str) -> FinalizeResult:
        """
        Run metadata write, encrypt and hash for one document.

        Raises:
            NotFoundError: Unknown id
            InvalidStateError: The document is already processed
            ToolFailure: A tool failed; the record is left in ``failed``
            InternalError: A filesystem or unexpected error interrupted a stage
        """
        async with self.registry.lease(file_id) as record:
            if record.status is FileStatus.PROCESSED:
                raise InvalidStateError(f"File {file_id} has already been finalized")

            async with self._slots:
                path = self.guard.check(Path(record.path))
                stage = self._advance(file_id, record.stage, PipelineStage.METADATA_WRITING)
                try:
                    await self._write_metadata(path, record.metadata)
                    stage = self._advance(file_id, stage, PipelineStage.ENCRYPTING)
                    await self._encrypt(path)
                    stage = self._advance(file_id, stage, PipelineStage.HASHING)
                    digest = await self.hasher.digest_async(path, scope=HashScope.CONTENT)
                except DocSealError as exc:
                    self._fail(file_id, stage, exc.message)
                    raise
                except OSError as exc:
                    self._fail(file_id, stage, str(exc))
                    raise InternalError(f"{stage.value} failed: {exc}") from exc
                except asyncio.CancelledError:
                    self._fail(file_id, stage, "cancelled")
                    raise
                except Exception as exc:
                    self._fail(file_id, stage, f"unexpected error: {exc}")
                    raise InternalError(f"{stage.value} failed: {exc}") from exc

                self._advance(file_id, stage, PipelineStage.PROCESSED)
                summary = self.registry.update(
                    file_id,
                    status=FileStatus.PROCESSED,
                    document_hash=digest,
                    has_document_hash=True,
                    has_encrypted_permissions=True,
                    has_metadata_locks=True,
                    error=None,
                )

        logger.info(f"File {file_id} finalized")
        return FinalizeResult(
            id=summary.id,
            name=summary.name,
            document_hash=digest,
            status=summary.status,
        )

    async def hash_document(self, file_id: str, algorithm: str = DEFAULT_ALGORITHM, scope: str = HashScope.FULL.value) -> Tuple[FileSummary, str]:
        """
        Ad-hoc digest of a document's current file and/or metadata.

        Raises:
            NotFoundError: Unknown id
            ValidationError: Unknown scope or algorithm
            InternalError: The file could not be read
        """
        async with self.registry.pin(file_id) as record:
            selected = self.hasher.parse_scope(scope)
            name = self.hasher.parse_algorithm(algorithm)
            try:
                digest = await self.hasher.digest_async(
                    Path(record.path),
                    record.metadata.model_dump(),
                    selected,
                    name,
                )
            except OSError as exc:
                raise InternalError(f"Error generating hash: {exc}") from exc
            summary = self.registry.update(file_id, has_document_hash=True)
        return summary, digest

    async def apply_security_action(self, file_id: str, action: str) -> str:
        """
        Flip one security flag without touching the file.

        This is a diagnostic surface only; the real protections are applied
        by ``finalize``. The flag changes under the record lease, so it waits
        for any in-flight finalize or metadata save to finish.

        Raises:
            NotFoundError: Unknown id
            ValidationError: Unknown action
        """
        async with self.registry.lease(file_id):
            try:
                selected = SecurityAction(action)
            except ValueError as exc:
                raise ValidationError("Invalid security action.") from exc
            flag, value, message = SECURITY_ACTIONS[selected]
            self.registry.update(file_id, **{flag: value})
            self.registry.append_event(file_id, f"Security flag {flag} set to {value}.")
        return message

    async def open_download(self, file_id: str) -> Tuple[FileSummary, DownloadStream]:
        """
        Open a document for streaming.

        The record stays pinned, and so safe from the cleanup sweep, until the
        returned stream is exhausted, closed or garbage collected.

        Raises:
            NotFoundError: Unknown id
            InternalError: The file cannot be opened
        """
        release = self.registry.hold(file_id)
        try:
            record = self.registry.get(file_id)
            handle = self.guard.check(Path(record.path)).open("rb")
        except OSError as exc:
            release()
            raise InternalError(f"Could not open file {file_id}: {exc}") from exc
        except BaseException:
            release()
            raise
        return record, DownloadStream(handle, release)

    def delete(self, file_id: str) -> FileSummary:
        """Remove a record and its backing file."""
        summary = self.registry.delete(file_id)
        remove_quietly(Path(summary.path))
        return summary

    def _advance(self, file_id: str, current: PipelineStage, target: PipelineStage) -> PipelineStage:
        if target not in TRANSITIONS[current]:
            raise InvalidStateError(f"File {file_id} cannot move from {current.value} to {target.value}")
        self.registry.update(file_id, stage=target)
        self.registry.append_event(file_id, f"Stage {target.value}.")
        logger.debug(f"File {file_id}: {current.value} -> {target.value}")
        return target

    def _fail(self, file_id: str, stage: PipelineStage, message: str) -> None:
        self.registry.update(file_id, stage=PipelineStage.FAILED, error=message)
        self.registry.append_event(file_id, f"Stage {stage.value} failed: {message}")
        logger.error(f"File {file_id} failed during {stage.value}: {message}")

    async def _write_metadata(self, path: Path, metadata: DocumentMetadata) -> None:
        arguments = metadata_arguments(metadata)
        if not arguments:
            logger.info(f"No mapped metadata to write for {path.name}")
            return
        await self.runner.run(self.commands.write_metadata(path, arguments))

    async def _encrypt(self, path: Path) -> None:
        output = self.guard.derive(path, "encrypted")
        try:
            await self.runner.run(self.commands.encrypt(path, output, generate_owner_credential()))
            if not output.is_file():
                raise InternalError("Encryptor produced no output")
            os.replace(output, path)
        finally:
            remove_quietly(output)
