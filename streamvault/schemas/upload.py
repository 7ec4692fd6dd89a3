"""
Pydantic schemas for the upload protocol boundary
"""
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


def _require_file_methods(value: Any, *methods: str) -> Any:
    """Duck-type check: BytesIO, open files and SpooledTemporaryFile all qualify."""
    missing = [m for m in methods if not callable(getattr(value, m, None))]
    if missing:
        raise ValueError(f"stream must be a binary file object (missing {', '.join(missing)})")
    return value


class InitUploadRequest(BaseModel):
    filename: str = Field(..., min_length=1, max_length=512)
    file_size: int = Field(..., ge=0)
    file_hash: str = Field(..., description="SHA256 of the full file (hex)")
    total_chunks: int = Field(..., ge=1)
    content_hint: Optional[str] = Field(None, description="Free-text description of the content")

    @field_validator("file_hash")
    @classmethod
    def normalize_hash(cls, value: str) -> str:
        return value.strip().lower()


class InitUploadResponse(BaseModel):
    upload_id: str


class ChunkUploadRequest(BaseModel):
    """One chunk; `stream` is a readable, seekable binary file object positioned at the start."""
    upload_id: str
    index: int
    chunk_hash: Optional[str] = None
    stream: Any

    @field_validator("stream")
    @classmethod
    def check_stream(cls, value: Any) -> Any:
        return _require_file_methods(value, "read", "seek", "tell")


class ChunkUploadResponse(BaseModel):
    upload_id: str
    index: int
    received: bool = True
    storage_path: str


class FullUploadRequest(BaseModel):
    upload_id: str
    filename: str = Field(..., min_length=1, max_length=512)
    file_hash: str
    stream: Any

    @field_validator("stream")
    @classmethod
    def check_stream(cls, value: Any) -> Any:
        return _require_file_methods(value, "read")


class FullUploadResponse(BaseModel):
    file_id: str
    chunk_paths: List[str]


class CompleteUploadRequest(BaseModel):
    upload_id: str


class CompleteUploadResponse(BaseModel):
    file_id: str
    chunk_paths: List[str]


class UploadStatusResponse(BaseModel):
    upload_id: str
    filename: str
    status: str
    valid: bool
    total_chunks: int
    received_chunks: List[int]
    missing_chunks: List[int]
    progress_percent: float


class CancelUploadResponse(BaseModel):
    upload_id: str
    status: str
