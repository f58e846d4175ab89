"""
Admission control for uploads.

UploadGate is the first thing an upload meets. It checks the declared type and
extension, the size ceiling and the per-client upload rate, then streams the
bytes into the sandbox under a fresh temporary name. Anything it rejects
leaves no file behind.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
from typing import Optional
from uuid import uuid4

from fastapi import UploadFile

from .exceptions import ValidationError
from .path_guard import PathGuard
from .rate_limit import RateLimiter
from .utils import remove_quietly, split_extension

logger = logging.getLogger(__name__)

PDF_MIME_TYPE = "application/pdf"
PDF_EXTENSIONS = frozenset({".pdf"})
READ_CHUNK_BYTES = 1024 * 1024


@dataclass(frozen=True)
class UploadHandle:
    """
    A raw upload persisted inside the sandbox, ready for sanitizing.

    Attributes:
        path: Absolute sandbox path of the stored bytes
        name: Original client filename
        size: Number of bytes stored
        mime_type: Declared content type
    """

    path: Path
    name: str
    size: int
    mime_type: str


class UploadGate:
    """
    Validates candidate uploads and stores accepted ones.

    Attributes:
        guard: Sandbox confinement for the stored file
        limiter: Per-client upload-rate window
        max_bytes: Size ceiling for a single upload
    """

    def __init__(self, guard: PathGuard, limiter: RateLimiter, max_bytes: int = 25 * 1024 * 1024) -> None:
        self.guard = guard
        self.limiter = limiter
        self.max_bytes = max_bytes

    @staticmethod
    def is_pdf(filename: str, mime_type: Optional[str]) -> bool:
        """A candidate passes when either the mime type or the extension says PDF."""
        _, extension = split_extension(filename)
        declared = (mime_type or "").split(";")[0].strip().lower()
        return declared == PDF_MIME_TYPE or extension in PDF_EXTENSIONS

    def validate(self, filename: Optional[str], mime_type: Optional[str], size: Optional[int]) -> None:
        """
        Shape checks that need no bytes.

        Raises:
            ValidationError: Missing filename, non-PDF candidate, or declared size over the ceiling
        """
        if not filename:
            raise ValidationError("Uploaded file must have a filename")
        if not self.is_pdf(filename, mime_type):
            raise ValidationError("Only PDF uploads are supported")
        if size is not None and size > self.max_bytes:
            raise ValidationError(f"File exceeds the {self.max_bytes} byte upload limit")

    async def admit(self, upload: UploadFile, client_id: str) -> UploadHandle:
        """
        Validate an upload, count it against the client's window and store it.

        Args:
            upload: Incoming multipart file
            client_id: Client identity (IP) for rate accounting

        Returns:
            Handle of the stored raw upload

        Raises:
            ValidationError: For any shape or size problem
            RateLimited: If the client's upload window is full
        """
        self.validate(upload.filename, upload.content_type, upload.size)
        self.limiter.hit(client_id)

        destination = self.guard.resolve(f"upload-{uuid4().hex}.pdf")
        try:
            written = await self._store(upload, destination)
        except BaseException:
            remove_quietly(destination)
            raise
        finally:
            await upload.close()

        logger.info(f"Accepted upload {upload.filename!r} ({written} bytes) from {client_id}")
        return UploadHandle(
            path=destination,
            name=upload.filename or destination.name,
            size=written,
            mime_type=upload.content_type or PDF_MIME_TYPE,
        )

    async def _store(self, upload: UploadFile, destination: Path) -> int:
        written = 0
        with destination.open("xb") as buffer:
            while chunk := await upload.read(READ_CHUNK_BYTES):
                written += len(chunk)
                if written > self.max_bytes:
                    raise ValidationError(f"File exceeds the {self.max_bytes} byte upload limit")
                buffer.write(chunk)
        if written == 0:
            raise ValidationError("Uploaded file is empty")
        return written
