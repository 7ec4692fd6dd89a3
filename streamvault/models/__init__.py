"""Models module exports"""
from .database import Base, ChunkRecord, FileRecord, IngestMode, UploadStatus, WatermarkAssignment

__all__ = ["Base", "FileRecord", "ChunkRecord", "WatermarkAssignment", "UploadStatus", "IngestMode"]
