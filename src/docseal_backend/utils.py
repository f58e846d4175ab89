"""Filename and filesystem helpers shared by the upload and download paths."""

from __future__ import annotations

import logging
from pathlib import Path
import re

logger = logging.getLogger(__name__)

# Runs of anything outside this set collapse to a single hyphen.
UNSAFE_LABEL_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")


def sanitize_label(label: str, fallback: str) -> str:
    """
    ASCII-only rendering of a client filename stem, for header values.

    Example:
        >>> sanitize_label("Quarterly Report (final)", "document")
        'quarterly-report-final'
        >>> sanitize_label("Résumé", "document")
        'r-sum'
    """
    cleaned = UNSAFE_LABEL_CHARS.sub("-", label.strip()).strip("-_.").lower()
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    return path


def split_extension(filename: str) -> tuple[str, str]:
    """
    Split a filename into stem and lowercase extension components.

    Only the final path component is considered, so client-supplied
    directory parts never leak into the result.

    Example:
        >>> split_extension("../Report.PDF")
        ('Report', '.pdf')
    """
    path = Path(filename.replace("\\", "/"))
    return path.stem, path.suffix.lower()


def remove_quietly(path: Path) -> bool:
    """
    Delete a file, treating an already-missing file as success.

    Returns:
        True if a file was removed, False if there was nothing to remove
    """
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.debug(f"Removed {path}")
    return True
