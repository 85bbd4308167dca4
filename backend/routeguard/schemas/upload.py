"""
RouteGuard Backend — Upload Schemas
=====================================

What:  UploadResult (one accepted file) and the path model for stored-file GET/DELETE.
Who:   Produced by FileIngestor; serialized by the files handler.

Storage location:
    filesystem → relative_path + stored_name + url are set
    embedded   → embedded_data + db_format are set
    both       → all of the above
"""

from typing import Optional, Union

from pydantic import BaseModel, Field

from routeguard.services.route_registry import StorageMode


class UploadResult(BaseModel):
    field_name: str = Field(default="file", description="Form field or JSON key the file came from")
    original_name: str = Field(description="Sanitized client filename")
    detected_mime_type: str = Field(description="Type sniffed from the content bytes")
    declared_mime_type: str = Field(description="Type the client declared")
    size_bytes: int = Field(ge=0)
    content_hash: str = Field(description="SHA-256 hex digest of the content")
    storage_mode: StorageMode
    relative_path: Optional[str] = Field(default=None, description="Path under the storage root")
    stored_name: Optional[str] = Field(default=None)
    url: Optional[str] = Field(default=None, description="Public URL of the stored file")
    embedded_data: Optional[Union[str, bytes]] = Field(
        default=None, repr=False, description="base64 text or raw bytes for database storage"
    )
    db_format: Optional[str] = Field(default=None, description="base64 or blob")

    def public_view(self) -> dict:
        """Response shape: everything except the embedded payload."""
        return self.model_dump(mode="json", exclude={"embedded_data"})


class StoredFilePath(BaseModel):
    path: str = Field(min_length=1, max_length=255, description="Relative path returned by the upload")
