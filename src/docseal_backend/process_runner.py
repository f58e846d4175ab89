"""
Subprocess invocation for the external document tools.

The sanitizer, metadata writer and encryptor all mutate files on disk; their
stdout is never treated as data. A run either completes with exit status 0 or
raises ``ToolFailure``. Nothing is retried here.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
import logging
import shlex
from typing import Sequence

from .exceptions import ToolFailure

logger = logging.getLogger(__name__)

# Keep only the end of stderr; tools like Ghostscript can be very chatty.
STDERR_TAIL_BYTES = 2000
REDACTED = "***"


@dataclass(frozen=True)
class ToolInvocation:
    """
    One external tool call.

    Attributes:
        tool: Logical tool/stage name used in logs and ToolFailure
        args: Full argument vector, executable first
        secrets: Argument values that must never appear in logs
    """

    tool: str
    args: Sequence[str]
    secrets: Sequence[str] = field(default_factory=tuple)

    def redacted(self) -> str:
        """Shell-style rendering of the command with secrets masked."""
        hidden = {secret for secret in self.secrets if secret}
        return " ".join(shlex.quote(REDACTED if arg in hidden else arg) for arg in self.args)


class ProcessRunner:
    """
    Runs external tools as subprocesses with a bounded timeout.

    Attributes:
        timeout: Seconds before a running tool is killed
    """

    def __init__(self, timeout: float = 120.0) -> None:
        self.timeout = timeout

    async def run(self, invocation: ToolInvocation) -> None:
        """
        Spawn the tool, wait for it to exit and map the outcome.

        Raises:
            ToolFailure: On spawn error, non-zero exit status or timeout
        """
        logger.debug(f"Running {invocation.tool}: {invocation.redacted()}")
        try:
            process = await asyncio.create_subprocess_exec(
                *invocation.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as exc:
            # ValueError: an argument the OS cannot pass, e.g. one with a NUL byte
            logger.error(f"{invocation.tool} could not be started: {exc}")
            detail = exc.strerror if isinstance(exc, OSError) and exc.strerror else exc
            raise ToolFailure(invocation.tool, f"spawn error: {detail}") from exc

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            await self._terminate(process)
            logger.error(f"{invocation.tool} timed out after {self.timeout}s")
            raise ToolFailure(invocation.tool, f"timed out after {self.timeout}s") from exc
        except asyncio.CancelledError:
            await self._terminate(process)
            raise

        if process.returncode != 0:
            detail = self._stderr_tail(stderr, invocation)
            logger.error(f"{invocation.tool} exited with status {process.returncode}: {detail}")
            exit_info = f"exit status {process.returncode}"
            if detail:
                exit_info = f"{exit_info}: {detail}"
            raise ToolFailure(invocation.tool, exit_info)

        logger.debug(f"{invocation.tool} completed")

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    @staticmethod
    def _stderr_tail(stderr: bytes | None, invocation: ToolInvocation) -> str:
        if not stderr:
            return ""
        text = stderr[-STDERR_TAIL_BYTES:].decode("utf-8", errors="replace").strip()
        for secret in invocation.secrets:
            if secret:
                text = text.replace(secret, REDACTED)
        return text
