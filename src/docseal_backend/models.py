from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class FileStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSED = "processed"


class PipelineStage(str, Enum):
    UPLOADED = "uploaded"
    METADATA_WRITING = "metadata-writing"
    ENCRYPTING = "encrypting"
    HASHING = "hashing"
    PROCESSED = "processed"
    FAILED = "failed"


class HashScope(str, Enum):
    CONTENT = "content"
    METADATA = "metadata"
    FULL = "full"


class SecurityAction(str, Enum):
    ENCRYPT_PERMISSIONS = "encryptPermissions"
    APPLY_METADATA_LOCKS = "applyMetadataLocks"
    ENCRYPT_METADATA = "encryptMetadata"
    DECRYPT_METADATA = "decryptMetadata"


class DocumentMetadata(BaseModel):
    """
    Metadata bag with three known namespaces.

    Values inside a namespace are free-form. Unknown top-level namespaces are
    kept as pass-through extras.
    """

    model_config = ConfigDict(extra="allow")

    basic: Dict[str, Any] = Field(default_factory=dict)
    exif: Dict[str, Any] = Field(default_factory=dict)
    xmp: Dict[str, Any] = Field(default_factory=dict)


class FileEvent(BaseModel):
    timestamp: datetime
    message: str


class FileSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    size: int
    mime_type: str = Field(alias="mimeType")
    path: str
    metadata: DocumentMetadata
    status: FileStatus
    stage: PipelineStage
    created_at: datetime = Field(alias="createdAt")
    has_document_hash: bool = Field(alias="hasDocumentHash")
    has_encrypted_metadata: bool = Field(alias="hasEncryptedMetadata")
    has_metadata_locks: bool = Field(alias="hasMetadataLocks")
    has_encrypted_permissions: bool = Field(alias="hasEncryptedPermissions")
    document_hash: Optional[str] = Field(default=None, alias="documentHash")
    error: Optional[str] = None
    events: List[FileEvent] = Field(default_factory=list)


class MetadataUpdate(BaseModel):
    metadata: DocumentMetadata


class FinalizeResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    document_hash: str = Field(alias="documentHash")
    status: FileStatus


class HashRequest(BaseModel):
    algorithm: str = "sha256"
    scope: str = HashScope.FULL.value


class HashResponse(BaseModel):
    hash: str
    name: str


class SecurityRequest(BaseModel):
    action: str


class MessageResponse(BaseModel):
    message: str
