"""
Repositories for file and chunk metadata
"""
import logging
from typing import Iterable, List, Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import sessionmaker

from ..core.database import session_scope
from ..core.exceptions import InvalidUploadStateError, NotFoundError
from ..models import ChunkRecord, FileRecord, IngestMode, UploadStatus

logger = logging.getLogger(__name__)


class FileRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, name: str, declared_hash: str, declared_size: int, content_hint: Optional[str] = None) -> FileRecord:
        with session_scope(self.session_factory) as db:
            record = FileRecord(
                name=name,
                declared_hash=declared_hash.lower(),
                declared_size=declared_size,
                content_hint=content_hint,
                valid=False,
                status=UploadStatus.INITIALIZED
            )
            db.add(record)
            db.flush()
            return record

    def get(self, file_id: str) -> Optional[FileRecord]:
        with session_scope(self.session_factory) as db:
            return db.get(FileRecord, file_id)

    def require(self, file_id: str) -> FileRecord:
        record = self.get(file_id)
        if record is None:
            raise NotFoundError(f"File {file_id} not found")
        return record

    def update(self, file_id: str, **fields) -> FileRecord:
        with session_scope(self.session_factory) as db:
            record = db.get(FileRecord, file_id)
            if record is None:
                raise NotFoundError(f"File {file_id} not found")
            for key, value in fields.items():
                setattr(record, key, value)
            db.flush()
            return record

    def transition(self, file_id: str, allowed: Iterable[UploadStatus], new_status: UploadStatus, **fields) -> FileRecord:
        """
        Move a file to `new_status` only if its current status is in `allowed`.

        The check and the write happen in one UPDATE, so two racing callers
        cannot both leave the same state.

        Raises:
            NotFoundError: no such file
            InvalidUploadStateError: current status not in `allowed`
        """
        allowed = list(allowed)
        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id, FileRecord.status.in_(allowed))
                .values(status=new_status, **fields)
            )
            if result.rowcount == 0:
                current = db.get(FileRecord, file_id)
                if current is None:
                    raise NotFoundError(f"File {file_id} not found")
                raise InvalidUploadStateError(
                    f"Upload {file_id} is {current.status.value}; "
                    f"expected one of {[s.value for s in allowed]}"
                )
        return self.require(file_id)

    def claim_ingest_mode(
        self,
        file_id: str,
        mode: IngestMode,
        allowed: Iterable[UploadStatus],
        new_status: UploadStatus,
        reentrant: bool = False
    ) -> FileRecord:
        """
        Commit an upload to one ingest mode before anything is written for it.

        Succeeds only while the status is in `allowed` and no mode is set
        (or, with `reentrant`, the same mode is already set). Chunked and full
        ingestion of one upload are therefore mutually exclusive.

        Raises:
            NotFoundError: no such file
            InvalidUploadStateError: wrong status or already claimed
        """
        allowed = list(allowed)
        mode_free = FileRecord.ingest_mode.is_(None)
        if reentrant:
            mode_free = or_(mode_free, FileRecord.ingest_mode == mode)

        with session_scope(self.session_factory) as db:
            result = db.execute(
                update(FileRecord)
                .where(FileRecord.id == file_id, FileRecord.status.in_(allowed), mode_free)
                .values(status=new_status, ingest_mode=mode)
            )
            if result.rowcount == 0:
                current = db.get(FileRecord, file_id)
                if current is None:
                    raise NotFoundError(f"File {file_id} not found")
                if current.status not in allowed:
                    raise InvalidUploadStateError(
                        f"Upload {file_id} is {current.status.value}; "
                        f"expected one of {[s.value for s in allowed]}"
                    )
                held = current.ingest_mode.value if current.ingest_mode else "none"
                raise InvalidUploadStateError(
                    f"Upload {file_id} is already being ingested as {held}; {mode.value} not allowed"
                )
        logger.debug(f"[{file_id}] Ingest mode claimed: {mode.value}")
        return self.require(file_id)


class ChunkRepository:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def upsert(self, file_id: str, index: int, chunk_hash: str, storage_path: str) -> None:
        """Record a stored chunk; a retried index replaces the previous row."""
        try:
            self._upsert_once(file_id, index, chunk_hash, storage_path)
        except DBIntegrityError:
            # Same index inserted concurrently; the row exists now
            self._upsert_once(file_id, index, chunk_hash, storage_path)

    def _upsert_once(self, file_id: str, index: int, chunk_hash: str, storage_path: str) -> None:
        with session_scope(self.session_factory) as db:
            existing = db.execute(
                select(ChunkRecord).where(ChunkRecord.file_id == file_id, ChunkRecord.index == index)
            ).scalar_one_or_none()
            if existing is None:
                db.add(ChunkRecord(file_id=file_id, index=index, hash=chunk_hash.lower(), storage_path=storage_path))
            else:
                existing.hash = chunk_hash.lower()
                existing.storage_path = storage_path

    def list_for_file(self, file_id: str) -> List[ChunkRecord]:
        with session_scope(self.session_factory) as db:
            return list(db.execute(
                select(ChunkRecord).where(ChunkRecord.file_id == file_id).order_by(ChunkRecord.index)
            ).scalars())

    def delete_for_file(self, file_id: str) -> int:
        with session_scope(self.session_factory) as db:
            result = db.execute(delete(ChunkRecord).where(ChunkRecord.file_id == file_id))
            return result.rowcount
