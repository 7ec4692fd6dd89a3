"""
Error taxonomy for the ingestion, transcode and watermark pipeline.

Integrity and completeness failures reject the operation that detected them.
Storage and external tool failures are kept apart because playback treats
them differently: a storage failure while rendering falls back to the
original asset, a tool failure does not.
"""
from typing import List, Optional, Sequence


class StreamVaultError(Exception):
    """Base class for all streamvault errors."""


class IntegrityError(StreamVaultError):
    """Checksum mismatch on a chunk or on the reassembled file."""

    def __init__(self, message: str, expected: Optional[str] = None, actual: Optional[str] = None):
        super().__init__(message)
        self.expected = expected
        self.actual = actual


class StorageError(StreamVaultError):
    """Filesystem read/write failure, including a missing path."""


class IncompleteUploadError(StorageError):
    """Received chunk indices do not match the expected set."""

    def __init__(self, upload_id: str, expected: int, missing: Sequence[int], unexpected: Sequence[int]):
        self.upload_id = upload_id
        self.expected = expected
        self.missing: List[int] = sorted(missing)
        self.unexpected: List[int] = sorted(unexpected)
        super().__init__(
            f"Upload {upload_id} incomplete: expected chunks 1..{expected}, "
            f"missing {self.missing}, unexpected {self.unexpected}"
        )


class ExternalToolError(StreamVaultError):
    """ffmpeg exited non-zero, timed out or died."""

    def __init__(self, action: str, return_code: int, output: str = "", command: Optional[Sequence[str]] = None):
        self.action = action
        self.return_code = return_code
        self.output = output
        self.command = list(command or [])
        super().__init__(f"ffmpeg {action} failed (exit code {return_code})")


class NotFoundError(StreamVaultError):
    """Referenced file record, upload or assignment does not exist."""


class InvalidUploadStateError(StreamVaultError):
    """Operation is not allowed in the upload's current status."""


class InvalidChunkIndexError(ValueError, StreamVaultError):
    """Chunk index outside 1..total_chunks."""
