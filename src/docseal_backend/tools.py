"""
Argument lists for the external document tools.

The service shells out to three tools, each treated as a black box:
- sanitizer (Ghostscript): rewrites a PDF through the pdfwrite device, which
  drops embedded files, scripts and other hidden objects and re-encodes images
- metadata writer (ExifTool): edits document info and XMP tags in place
- encryptor (qpdf): applies AES-256 encryption with a restrictive permission set

Only the invocation contract lives here; ProcessRunner executes the result.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import secrets
from typing import Any, Dict, List, Sequence, Tuple

from .models import DocumentMetadata
from .process_runner import ToolInvocation

# (namespace, field) -> ExifTool tag. The exif namespace is intentionally not
# mapped: its camera/location fields have no PDF write target.
METADATA_TAGS: Tuple[Tuple[str, str, str], ...] = (
    ("basic", "title", "Title"),
    ("basic", "author", "Author"),
    ("basic", "description", "Subject"),
    ("basic", "keywords", "Keywords"),
    ("xmp", "creator", "XMP-dc:Creator"),
    ("xmp", "rights", "XMP-dc:Rights"),
    ("xmp", "subject", "XMP-dc:Subject"),
)

OWNER_CREDENTIAL_BYTES = 32
ENCRYPTION_KEY_LENGTH = "256"

# qpdf restrictions for 256-bit keys: no form filling, no edits, no copying,
# no annotations, no other modification. Printing stays allowed.
PERMISSION_RESTRICTIONS: Tuple[str, ...] = (
    "--form=n",
    "--modify=none",
    "--extract=n",
    "--annotate=n",
    "--modify-other=n",
)


def _tag_values(value: Any) -> List[str]:
    """Flatten a metadata value into the non-empty strings to write."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        items = [str(item).strip() for item in value if item is not None]
    else:
        items = [str(value).strip()]
    return [item for item in items if item]


def metadata_arguments(metadata: DocumentMetadata) -> List[str]:
    """
    Map the basic/xmp namespaces onto ExifTool ``-Tag=value`` arguments.

    Absent or empty fields are omitted rather than cleared. Sequence values
    (e.g. keywords) produce one argument per item, which ExifTool treats as
    list entries.

    Example:
        >>> metadata_arguments(DocumentMetadata(basic={"title": "A", "author": ""}))
        ['-Title=A']
    """
    namespaces: Dict[str, Dict[str, Any]] = {"basic": metadata.basic, "xmp": metadata.xmp}
    arguments: List[str] = []
    for namespace, key, tag in METADATA_TAGS:
        for item in _tag_values(namespaces[namespace].get(key)):
            arguments.append(f"-{tag}={item}")
    return arguments


def generate_owner_credential() -> str:
    """Fresh high-entropy owner password; callers must never store or return it."""
    return secrets.token_urlsafe(OWNER_CREDENTIAL_BYTES)


@dataclass(frozen=True)
class ToolCommands:
    """
    Builds invocations for the configured tool executables.

    Attributes:
        sanitizer: Ghostscript executable
        metadata_writer: ExifTool executable
        encryptor: qpdf executable
    """

    sanitizer: str = "gs"
    metadata_writer: str = "exiftool"
    encryptor: str = "qpdf"

    def sanitize(self, source: Path, output: Path) -> ToolInvocation:
        return ToolInvocation(
            tool="sanitize",
            args=[
                self.sanitizer,
                "-q",
                "-dSAFER",
                "-dBATCH",
                "-dNOPAUSE",
                "-sDEVICE=pdfwrite",
                "-dPDFSETTINGS=/ebook",
                "-dDetectDuplicateImages=true",
                f"-sOutputFile={output}",
                str(source),
            ],
        )

    def write_metadata(self, target: Path, arguments: Sequence[str]) -> ToolInvocation:
        return ToolInvocation(
            tool="metadata-write",
            args=[self.metadata_writer, "-overwrite_original", "-q", *arguments, str(target)],
        )

    def encrypt(self, source: Path, output: Path, owner_credential: str, user_credential: str = "") -> ToolInvocation:
        return ToolInvocation(
            tool="encrypt",
            args=[
                self.encryptor,
                "--encrypt",
                user_credential,
                owner_credential,
                ENCRYPTION_KEY_LENGTH,
                *PERMISSION_RESTRICTIONS,
                "--",
                str(source),
                str(output),
            ],
            secrets=(owner_credential, user_credential),
        )
