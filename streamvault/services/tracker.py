"""
Transient per-upload chunk tracking.

For every upload id the tracker keeps the expected chunk count and the set of
chunk indices received so far. Completion is allowed only when the received
set is exactly {1..expected}; a duplicate registration can therefore never
hide a gap.
"""
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import redis

from ..core.exceptions import IncompleteUploadError, NotFoundError
from .storage import ChunkStore

logger = logging.getLogger(__name__)


@dataclass
class UploadSession:
    expected_chunk_count: int
    received_chunk_indices: Set[int] = field(default_factory=set)

    @property
    def missing(self) -> List[int]:
        return sorted(set(range(1, self.expected_chunk_count + 1)) - self.received_chunk_indices)

    @property
    def unexpected(self) -> List[int]:
        return sorted(i for i in self.received_chunk_indices if i < 1 or i > self.expected_chunk_count)

    @property
    def is_complete(self) -> bool:
        return self.received_chunk_indices == set(range(1, self.expected_chunk_count + 1))


class UploadTracker(ABC):
    """Tracker interface. Implementations must make register_chunk atomic."""

    def __init__(self, chunk_store: ChunkStore):
        self.chunk_store = chunk_store

    @abstractmethod
    def register_upload(self, upload_id: str, expected_chunk_count: int) -> None:
        """Initialize (or re-initialize, replacing prior state) an upload."""

    @abstractmethod
    def register_chunk(self, upload_id: str, index: int) -> None:
        """Mark a chunk index as received. Idempotent; NotFoundError if the upload is not registered."""

    @abstractmethod
    def get_session(self, upload_id: str) -> Optional[UploadSession]:
        """Snapshot of an upload's state, or None if unknown."""

    @abstractmethod
    def cleanup(self, upload_id: str) -> None:
        """Drop all state for an upload. No-op if absent."""

    def validate_and_get_chunk_paths(self, upload_id: str) -> List[str]:
        """
        Check that exactly chunks 1..N were received and return their paths.

        Raises:
            NotFoundError: upload was never registered
            IncompleteUploadError: received set differs from {1..N}
        """
        session = self.get_session(upload_id)
        if session is None:
            raise NotFoundError(f"Upload {upload_id} is not being tracked")

        if not session.is_complete:
            logger.error(
                f"[{upload_id}] Upload incomplete. Expected: {session.expected_chunk_count}, "
                f"received: {len(session.received_chunk_indices)}, missing: {session.missing}, "
                f"unexpected: {session.unexpected}"
            )
            raise IncompleteUploadError(
                upload_id, session.expected_chunk_count, session.missing, session.unexpected
            )

        return [
            self.chunk_store.path_for(upload_id, index)
            for index in range(1, session.expected_chunk_count + 1)
        ]


class InMemoryUploadTracker(UploadTracker):
    """Process-local tracker guarded by a single lock."""

    def __init__(self, chunk_store: ChunkStore):
        super().__init__(chunk_store)
        self._sessions: Dict[str, UploadSession] = {}
        self._lock = threading.Lock()

    def register_upload(self, upload_id: str, expected_chunk_count: int) -> None:
        logger.debug(f"[{upload_id}] Registering upload with {expected_chunk_count} chunks")
        with self._lock:
            self._sessions[upload_id] = UploadSession(expected_chunk_count)

    def register_chunk(self, upload_id: str, index: int) -> None:
        logger.debug(f"[{upload_id}] Registering chunk {index}")
        with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                raise NotFoundError(f"Upload {upload_id} is not being tracked")
            session.received_chunk_indices.add(index)

    def get_session(self, upload_id: str) -> Optional[UploadSession]:
        with self._lock:
            session = self._sessions.get(upload_id)
            if session is None:
                return None
            return UploadSession(session.expected_chunk_count, set(session.received_chunk_indices))

    def cleanup(self, upload_id: str) -> None:
        logger.debug(f"[{upload_id}] Cleaning up tracker state")
        with self._lock:
            self._sessions.pop(upload_id, None)


class RedisUploadTracker(UploadTracker):
    """
    Redis-backed tracker shared by every API process.

    Keys:
        upload:{id}          hash, field "total" = expected chunk count
        upload:{id}:chunks   set of received chunk indices

    Both keys carry a TTL refreshed on every write, so abandoned uploads
    expire on their own.
    """

    KEY_PREFIX = "upload:"

    # Add only while the upload is registered; refresh both TTLs
    REGISTER_CHUNK_SCRIPT = """
    if redis.call("exists", KEYS[1]) == 0 then
        return 0
    end
    redis.call("sadd", KEYS[2], ARGV[1])
    redis.call("expire", KEYS[1], ARGV[2])
    redis.call("expire", KEYS[2], ARGV[2])
    return 1
    """

    def __init__(
        self,
        chunk_store: ChunkStore,
        client: redis.Redis = None,
        redis_url: str = None,
        ttl_seconds: int = None
    ):
        super().__init__(chunk_store)
        from ..core.config import settings
        if client is None:
            client = redis.Redis.from_url(redis_url or settings.REDIS_URL, decode_responses=True)
        self.client = client
        self.ttl_seconds = ttl_seconds or settings.UPLOAD_TTL_SECONDS

    def _upload_key(self, upload_id: str) -> str:
        return f"{self.KEY_PREFIX}{upload_id}"

    def _chunks_key(self, upload_id: str) -> str:
        return f"{self.KEY_PREFIX}{upload_id}:chunks"

    def register_upload(self, upload_id: str, expected_chunk_count: int) -> None:
        logger.debug(f"[{upload_id}] Registering upload with {expected_chunk_count} chunks in Redis")
        pipe = self.client.pipeline(transaction=True)
        pipe.delete(self._chunks_key(upload_id))
        pipe.hset(self._upload_key(upload_id), "total", str(expected_chunk_count))
        pipe.expire(self._upload_key(upload_id), self.ttl_seconds)
        pipe.execute()

    def register_chunk(self, upload_id: str, index: int) -> None:
        logger.debug(f"[{upload_id}] Registering chunk {index} in Redis")
        added = self.client.eval(
            self.REGISTER_CHUNK_SCRIPT,
            2,
            self._upload_key(upload_id),
            self._chunks_key(upload_id),
            str(index),
            str(self.ttl_seconds)
        )
        if not added:
            raise NotFoundError(f"Upload {upload_id} is not being tracked")

    def get_session(self, upload_id: str) -> Optional[UploadSession]:
        pipe = self.client.pipeline(transaction=True)
        pipe.hget(self._upload_key(upload_id), "total")
        pipe.smembers(self._chunks_key(upload_id))
        total, members = pipe.execute()
        if total is None:
            return None
        return UploadSession(int(total), {int(m) for m in members})

    def cleanup(self, upload_id: str) -> None:
        logger.debug(f"[{upload_id}] Deleting tracker keys from Redis")
        self.client.delete(self._upload_key(upload_id), self._chunks_key(upload_id))
