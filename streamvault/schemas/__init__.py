"""Schemas module exports"""
from .upload import (
    CancelUploadResponse,
    ChunkUploadRequest,
    ChunkUploadResponse,
    CompleteUploadRequest,
    CompleteUploadResponse,
    FullUploadRequest,
    FullUploadResponse,
    InitUploadRequest,
    InitUploadResponse,
    UploadStatusResponse,
)

__all__ = [
    "InitUploadRequest",
    "InitUploadResponse",
    "ChunkUploadRequest",
    "ChunkUploadResponse",
    "FullUploadRequest",
    "FullUploadResponse",
    "CompleteUploadRequest",
    "CompleteUploadResponse",
    "UploadStatusResponse",
    "CancelUploadResponse",
]
