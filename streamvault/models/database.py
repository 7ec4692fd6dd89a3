"""
Database models for uploaded files, their chunks and watermark assignments

FileRecord ids double as upload ids: every chunk, tracker key and on-disk
directory for an ingestion session is keyed by it.
"""
import enum
from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import BigInteger, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class UploadStatus(str, enum.Enum):
    INITIALIZED = "initialized"
    INGESTING = "ingesting"
    COMPLETING = "completing"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"


class IngestMode(str, enum.Enum):
    CHUNKED = "chunked"
    FULL = "full"


class FileRecord(Base):
    """
    Metadata for one uploaded video.

    `valid` only becomes True once the whole-file checksum has been verified
    and the HLS playlist has been written.
    """
    __tablename__ = "files"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    name: Mapped[str] = mapped_column(String(512), nullable=False)
    declared_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    declared_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    content_hint: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    valid: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[UploadStatus] = mapped_column(
        Enum(UploadStatus, native_enum=False, length=20),
        default=UploadStatus.INITIALIZED,
        nullable=False,
        index=True
    )
    ingest_mode: Mapped[Optional[IngestMode]] = mapped_column(
        Enum(IngestMode, native_enum=False, length=10),
        nullable=True
    )
    # Digest over the chunk sequence produced by a full upload's split
    segments_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )

    @property
    def expected_hash(self) -> str:
        """Digest the reassembled chunk sequence must match at completion."""
        if self.ingest_mode == IngestMode.FULL and self.segments_hash:
            return self.segments_hash
        return self.declared_hash

    def __repr__(self):
        return f"<FileRecord id={self.id} name={self.name} status={self.status.value} valid={self.valid}>"


class ChunkRecord(Base):
    """One stored chunk of an upload. Index is 1-based and unique per file."""
    __tablename__ = "chunks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    file_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    index: Mapped[int] = mapped_column(Integer, nullable=False)
    hash: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_path: Mapped[str] = mapped_column(String(1000), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False
    )

    __table_args__ = (
        UniqueConstraint("file_id", "index", name="uq_chunk_file_index"),
    )

    def __repr__(self):
        return f"<ChunkRecord file_id={self.file_id} index={self.index}>"


class WatermarkAssignment(Base):
    """
    Traceability code shown on everything a user plays or exports of a file.

    Both constraints matter: one code per (user, file) pair, and no code
    handed out twice.
    """
    __tablename__ = "watermarks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    file_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("files.id", ondelete="CASCADE"),
        nullable=False
    )
    code: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "file_id", name="uq_watermark_user_file"),
        UniqueConstraint("code", name="uq_watermark_code"),
    )

    def __repr__(self):
        return f"<WatermarkAssignment user_id={self.user_id} file_id={self.file_id} code={self.code}>"
