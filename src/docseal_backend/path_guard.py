"""
Sandbox confinement for every path the service touches.

All record-owned files live under a single sandbox root. Any path built from
client input or derived from another path (sanitized/encrypted variants) goes
through ``PathGuard`` before a filesystem operation uses it.
"""

from __future__ import annotations

import os
from pathlib import Path

from .exceptions import PathViolation
from .utils import ensure_directory


class PathGuard:
    """
    Confines paths to one sandbox directory.

    Attributes:
        root: Absolute, symlink-resolved sandbox root
    """

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(Path(root)).resolve()

    def contains(self, path: Path) -> bool:
        """Return True if ``path`` resolves to the root or somewhere beneath it."""
        resolved = Path(path).resolve()
        return resolved == self.root or self.root in resolved.parents

    def resolve(self, candidate: str | Path) -> Path:
        """
        Normalize a relative path and resolve it against the sandbox root.

        Args:
            candidate: Relative path supplied by a caller

        Returns:
            The absolute path inside the sandbox

        Raises:
            PathViolation: If the candidate is absolute, empty, or escapes the root
        """
        text = str(candidate)
        if not text or "\x00" in text:
            raise PathViolation("Empty or malformed path")
        if os.path.isabs(text):
            raise PathViolation(f"Absolute paths are not allowed: {text!r}")

        normalized = os.path.normpath(text)
        resolved = (self.root / normalized).resolve()
        if resolved == self.root or not self.contains(resolved):
            raise PathViolation(f"Path escapes the sandbox: {text!r}")
        return resolved

    def check(self, path: Path) -> Path:
        """Verify an already absolute path lies inside the sandbox and return it resolved."""
        resolved = Path(path).resolve()
        if resolved == self.root or not self.contains(resolved):
            raise PathViolation(f"Path escapes the sandbox: {str(path)!r}")
        return resolved

    def derive(self, path: Path, marker: str) -> Path:
        """
        Build a sibling filename such as ``doc.sanitized.pdf`` for ``doc.pdf``.

        Both the source and the derived path must sit inside the sandbox.
        """
        source = self.check(path)
        derived = source.with_name(f"{source.stem}.{marker}{source.suffix}")
        return self.resolve(derived.relative_to(self.root))
