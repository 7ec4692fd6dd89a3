"""
Upload orchestrator.

Drives the two ingestion modes through init -> chunk*/full -> complete:

    initialized --chunk--> ingesting --complete--> completing --> finalized
    initialized --full---> ingesting --complete--> completing --> finalized
    initialized/ingesting --cancel--> cancelled

Checksums gate every boundary: each chunk before it is stored, the whole
file before it is packaged. Nothing leaves `finalized`.
"""
import logging
import shutil
import tempfile
from pathlib import Path
from typing import List

from ..core.exceptions import (
    IntegrityError,
    InvalidChunkIndexError,
    InvalidUploadStateError,
    StorageError,
    StreamVaultError,
)
from ..models import FileRecord, IngestMode, UploadStatus
from ..schemas import (
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
from . import checksum
from .records import ChunkRepository, FileRepository
from .storage import ChunkStore
from .tracker import UploadTracker
from .transcode import TranscodePipeline

logger = logging.getLogger(__name__)

CHUNK_ACCEPTING = (UploadStatus.INITIALIZED, UploadStatus.INGESTING)


class UploadService:
    def __init__(
        self,
        files: FileRepository,
        chunks: ChunkRepository,
        tracker: UploadTracker,
        chunk_store: ChunkStore,
        pipeline: TranscodePipeline
    ):
        self.files = files
        self.chunks = chunks
        self.tracker = tracker
        self.chunk_store = chunk_store
        self.pipeline = pipeline

    def init(self, request: InitUploadRequest) -> InitUploadResponse:
        """Create the file record and start tracking its chunks."""
        logger.info(f"Initializing upload: {request.filename} ({request.total_chunks} chunks)")
        record = self.files.create(
            name=request.filename,
            declared_hash=request.file_hash,
            declared_size=request.file_size,
            content_hint=request.content_hint
        )
        self.tracker.register_upload(record.id, request.total_chunks)
        logger.info(f"[{record.id}] Upload initialized")
        return InitUploadResponse(upload_id=record.id)

    def chunk(self, request: ChunkUploadRequest) -> ChunkUploadResponse:
        """
        Verify, store and register one chunk.

        A checksum mismatch is rejected before anything is written, so the
        tracker never sees a bad chunk and the client can simply resend it.
        Re-sending an index replaces the stored chunk.
        """
        upload_id, index = request.upload_id, request.index
        logger.info(f"[{upload_id}] Receiving chunk {index}")

        record = self.files.require(upload_id)
        self._ensure_chunked_ingest(record)

        session = self.tracker.get_session(upload_id)
        if session is None:
            raise InvalidUploadStateError(f"Upload {upload_id} is not accepting chunks")
        if index < 1 or index > session.expected_chunk_count:
            raise InvalidChunkIndexError(
                f"Invalid chunk index {index}. Must be between 1 and {session.expected_chunk_count}"
            )

        chunk_hash = self._verify_chunk(request)

        # Claim chunked mode before writing so a concurrent full upload cannot interleave
        self.files.claim_ingest_mode(
            upload_id, IngestMode.CHUNKED, CHUNK_ACCEPTING, UploadStatus.INGESTING, reentrant=True
        )

        storage_path = self.chunk_store.upload(upload_id, index, request.stream)
        self.chunks.upsert(upload_id, index, chunk_hash, storage_path)
        self.tracker.register_chunk(upload_id, index)

        logger.debug(f"[{upload_id}] Chunk {index} stored at {storage_path}")
        return ChunkUploadResponse(upload_id=upload_id, index=index, storage_path=storage_path)

    def full(self, request: FullUploadRequest) -> FullUploadResponse:
        """
        Accept the whole file in one request and split it into chunks.

        Only valid before any chunk was received. Files written before a
        failure are not rolled back.
        """
        upload_id = request.upload_id
        logger.info(f"[{upload_id}] Receiving full upload {request.filename}")
        record = self.files.require(upload_id)
        if record.status != UploadStatus.INITIALIZED:
            raise InvalidUploadStateError(
                f"Full upload requires a fresh upload; {upload_id} is {record.status.value}"
            )
        self.files.claim_ingest_mode(
            upload_id, IngestMode.FULL, (UploadStatus.INITIALIZED,), UploadStatus.INITIALIZED
        )

        temp_dir = None
        try:
            upload_dir = self.chunk_store.paths.upload_dir(upload_id)
            upload_dir.mkdir(parents=True, exist_ok=True)
            temp_dir = Path(tempfile.mkdtemp(dir=upload_dir, prefix="original_"))
            temp_file = temp_dir / "original.mp4"

            calculated_hash, size = checksum.copy_and_digest(request.stream, temp_file)
            if not checksum.hashes_match(calculated_hash, record.declared_hash) \
                    or not checksum.hashes_match(calculated_hash, request.file_hash):
                logger.error(
                    f"[{upload_id}] Invalid hash. Declared: {record.declared_hash}, "
                    f"request: {request.file_hash}, calculated: {calculated_hash}"
                )
                raise IntegrityError(
                    f"Checksum mismatch for upload {upload_id}",
                    expected=record.declared_hash,
                    actual=calculated_hash
                )
            logger.info(f"[{upload_id}] Hash verified ({size} bytes)")

            self.files.update(upload_id, name=request.filename, declared_hash=calculated_hash, declared_size=size)

            segments = self.pipeline.split(temp_file, upload_id)
            chunk_paths = self._store_split_segments(upload_id, segments)
            segments_hash = checksum.digest_concatenated(chunk_paths)

            self.tracker.register_upload(upload_id, len(chunk_paths))
            for index in range(1, len(chunk_paths) + 1):
                self.tracker.register_chunk(upload_id, index)

            self.files.transition(
                upload_id,
                (UploadStatus.INITIALIZED,),
                UploadStatus.INGESTING,
                segments_hash=segments_hash
            )
            logger.info(f"[{upload_id}] Full upload split into {len(chunk_paths)} chunks")
            return FullUploadResponse(file_id=upload_id, chunk_paths=chunk_paths)

        except StreamVaultError:
            self._release_full_claim(upload_id)
            raise
        except Exception as e:
            logger.error(f"[{upload_id}] Error processing full upload: {e}")
            self._release_full_claim(upload_id)
            raise StorageError(f"Full upload failed for {upload_id}") from e
        finally:
            if temp_dir is not None:
                shutil.rmtree(temp_dir, ignore_errors=True)

    def complete(self, request: CompleteUploadRequest) -> CompleteUploadResponse:
        """
        Verify the reassembled file and package it as HLS.

        A failed completeness or checksum check leaves every stored chunk in
        place; the client can fix the bad chunk and call complete again.
        """
        upload_id = request.upload_id
        logger.info(f"[{upload_id}] Completing upload")
        record = self.files.require(upload_id)
        if record.status not in CHUNK_ACCEPTING:
            raise InvalidUploadStateError(f"Upload {upload_id} is {record.status.value}; cannot complete")

        chunk_paths = self.tracker.validate_and_get_chunk_paths(upload_id)

        # A full upload still splitting stays initialized until its chunks are recorded
        record = self.files.transition(upload_id, (UploadStatus.INGESTING,), UploadStatus.COMPLETING)
        try:
            self._verify_file(chunk_paths, record)
            self.pipeline.format_hls(chunk_paths, upload_id)
        except Exception:
            try:
                self.files.transition(upload_id, (UploadStatus.COMPLETING,), UploadStatus.INGESTING)
            except Exception as rollback_error:
                logger.error(f"[{upload_id}] Could not return upload to ingesting: {rollback_error}")
            raise

        self.files.transition(upload_id, (UploadStatus.COMPLETING,), UploadStatus.FINALIZED, valid=True)
        self.tracker.cleanup(upload_id)

        logger.info(f"[{upload_id}] Upload finalized and validated")
        return CompleteUploadResponse(file_id=upload_id, chunk_paths=chunk_paths)

    def status(self, upload_id: str) -> UploadStatusResponse:
        """Progress report a client can use to resume an interrupted upload."""
        record = self.files.require(upload_id)
        session = self.tracker.get_session(upload_id)

        if session is None:
            total = received = 0
            received_chunks: List[int] = []
            missing: List[int] = []
            if record.status == UploadStatus.FINALIZED:
                records = self.chunks.list_for_file(upload_id)
                received_chunks = [c.index for c in records]
                total = received = len(received_chunks)
        else:
            total = session.expected_chunk_count
            received_chunks = sorted(session.received_chunk_indices)
            missing = session.missing
            received = len(received_chunks)

        progress = round(received / total * 100, 2) if total > 0 else 0.0
        return UploadStatusResponse(
            upload_id=upload_id,
            filename=record.name,
            status=record.status.value,
            valid=record.valid,
            total_chunks=total,
            received_chunks=received_chunks,
            missing_chunks=missing,
            progress_percent=progress
        )

    def cancel(self, upload_id: str) -> CancelUploadResponse:
        """Abandon an unfinished upload and delete its chunks."""
        self.files.transition(upload_id, CHUNK_ACCEPTING, UploadStatus.CANCELLED)
        self.tracker.cleanup(upload_id)
        self.chunks.delete_for_file(upload_id)
        self.chunk_store.remove_upload(upload_id)
        logger.info(f"[{upload_id}] Upload cancelled")
        return CancelUploadResponse(upload_id=upload_id, status=UploadStatus.CANCELLED.value)

    def _release_full_claim(self, upload_id: str) -> None:
        """Let a failed full upload be retried, in either mode."""
        try:
            self.files.transition(
                upload_id, (UploadStatus.INITIALIZED,), UploadStatus.INITIALIZED, ingest_mode=None
            )
        except Exception as e:
            logger.error(f"[{upload_id}] Could not release full upload claim: {e}")

    def _ensure_chunked_ingest(self, record: FileRecord) -> None:
        if record.status not in CHUNK_ACCEPTING:
            raise InvalidUploadStateError(f"Upload {record.id} is {record.status.value}; not accepting chunks")
        if record.ingest_mode == IngestMode.FULL:
            raise InvalidUploadStateError(f"Upload {record.id} was sent as a full file; chunks not accepted")

    def _verify_chunk(self, request: ChunkUploadRequest) -> str:
        """Check the chunk checksum and rewind the stream for storage."""
        try:
            start = request.stream.tell()
        except (AttributeError, OSError, ValueError) as e:
            raise StorageError(f"Chunk {request.index} stream must be seekable") from e

        valid = checksum.verify_chunk(request.stream, request.chunk_hash)
        if not valid:
            logger.error(f"[{request.upload_id}] Invalid checksum for chunk {request.index}")
            raise IntegrityError(
                f"Checksum mismatch for chunk {request.index}",
                expected=request.chunk_hash
            )
        request.stream.seek(start)
        return request.chunk_hash.strip().lower()

    def _verify_file(self, chunk_paths: List[str], record: FileRecord) -> None:
        if not checksum.verify_concatenated(chunk_paths, record.expected_hash):
            logger.error(f"[{record.id}] Invalid checksum for complete file")
            raise IntegrityError(f"Checksum mismatch for complete file {record.id}", expected=record.expected_hash)

    def _store_split_segments(self, upload_id: str, segments: List[str]) -> List[str]:
        stored = []
        split_dirs = set()
        for position, segment in enumerate(segments):
            index = position + 1
            segment_path = Path(segment)
            split_dirs.add(segment_path.parent)
            chunk_hash = checksum.digest_file(segment_path)
            with self.chunk_store.load(segment_path) as stream:
                storage_path = self.chunk_store.upload(upload_id, index, stream)
            self.chunks.upsert(upload_id, index, chunk_hash, storage_path)
            self.chunk_store.delete(segment_path)
            stored.append(storage_path)
            logger.debug(f"[{upload_id}] Chunk {index} stored from split segment {segment_path.name}")
        for split_dir in split_dirs:
            shutil.rmtree(split_dir, ignore_errors=True)
        return stored
