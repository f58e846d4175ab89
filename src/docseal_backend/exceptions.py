"""
Domain exceptions for the DocSeal document pipeline.

Every failure that can reach a client is one of the classes below. Routes in
``main`` translate them into ``HTTPException`` responses using the status code
carried on each class.
"""

from __future__ import annotations

from typing import Optional


class DocSealError(Exception):
    """Base class for all service errors."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(DocSealError):
    """Bad input shape, type or size."""

    status_code = 400


class RateLimited(DocSealError):
    """A client exceeded one of its rate windows."""

    status_code = 429

    def __init__(self, message: str, retry_after: Optional[int] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class PathViolation(DocSealError):
    """A path resolved outside the sandbox root."""

    status_code = 400


class ToolFailure(DocSealError):
    """
    An external tool exited non-zero, could not be spawned, or timed out.

    Attributes:
        tool: Name of the stage/tool that failed (e.g. "sanitize")
        exit_info: Exit code, timeout notice or spawn error text
    """

    status_code = 500

    def __init__(self, tool: str, exit_info: str) -> None:
        super().__init__(f"{tool} failed: {exit_info}")
        self.tool = tool
        self.exit_info = exit_info


class NotFoundError(DocSealError):
    """No record exists for the requested id."""

    status_code = 404


class InvalidStateError(DocSealError):
    """The record is in a state that does not allow the requested operation."""

    status_code = 409


class InternalError(DocSealError):
    """Unexpected failure inside the service."""

    status_code = 500
