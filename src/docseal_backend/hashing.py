"""
Streaming document digests.

A digest covers file content, serialized metadata, or both depending on
``scope``. File bytes always come first; metadata is serialized as canonical
JSON so the same metadata always yields the same bytes.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
from pathlib import Path
from typing import Any, Mapping, Optional

from .exceptions import ValidationError
from .models import HashScope

CHUNK_SIZE = 64 * 1024
DEFAULT_ALGORITHM = "sha256"

# SHAKE digests need an explicit output length, which the API does not take.
SUPPORTED_ALGORITHMS = frozenset(
    name for name in hashlib.algorithms_guaranteed if not name.startswith("shake_")
)


def serialize_metadata(metadata: Mapping[str, Any]) -> bytes:
    """Deterministic UTF-8 JSON encoding of a metadata mapping."""
    return json.dumps(metadata, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str).encode("utf-8")


class HashingService:
    """Computes digests over files and metadata."""

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    @staticmethod
    def parse_scope(scope: str | HashScope) -> HashScope:
        try:
            return HashScope(scope)
        except ValueError as exc:
            allowed = ", ".join(item.value for item in HashScope)
            raise ValidationError(f"Unknown hash scope {scope!r}; expected one of: {allowed}") from exc

    @staticmethod
    def parse_algorithm(algorithm: str) -> str:
        name = (algorithm or "").strip().lower()
        # Accept "sha-256" and "sha3-256" spellings as well as hashlib names.
        for candidate in (name, name.replace("-", ""), name.replace("-", "_")):
            if candidate in SUPPORTED_ALGORITHMS:
                return candidate
        allowed = ", ".join(sorted(SUPPORTED_ALGORITHMS))
        raise ValidationError(f"Unsupported hash algorithm {algorithm!r}; expected one of: {allowed}")

    def digest(
        self,
        path: Optional[Path],
        metadata: Optional[Mapping[str, Any]] = None,
        scope: str | HashScope = HashScope.CONTENT,
        algorithm: str = DEFAULT_ALGORITHM,
    ) -> str:
        """
        Compute a hex digest (blocking).

        Args:
            path: File whose bytes are hashed for "content" and "full" scopes
            metadata: Mapping serialized for "metadata" and "full" scopes
            scope: Which inputs the digest covers
            algorithm: Any hashlib algorithm from SUPPORTED_ALGORITHMS

        Raises:
            ValidationError: For an unknown scope or algorithm
            OSError: If the file cannot be read
        """
        selected = self.parse_scope(scope)
        hasher = hashlib.new(self.parse_algorithm(algorithm))

        if selected in (HashScope.CONTENT, HashScope.FULL):
            if path is None:
                raise ValidationError(f"Scope {selected.value!r} requires a file")
            with Path(path).open("rb") as handle:
                for chunk in iter(lambda: handle.read(self.chunk_size), b""):
                    hasher.update(chunk)

        if selected in (HashScope.METADATA, HashScope.FULL):
            hasher.update(serialize_metadata(metadata or {}))

        return hasher.hexdigest()

    async def digest_async(
        self,
        path: Optional[Path],
        metadata: Optional[Mapping[str, Any]] = None,
        scope: str | HashScope = HashScope.CONTENT,
        algorithm: str = DEFAULT_ALGORITHM,
    ) -> str:
        """Same as ``digest`` but reads the file in a worker thread."""
        return await asyncio.to_thread(self.digest, path, metadata, scope, algorithm)
