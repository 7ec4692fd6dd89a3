"""
SHA256 helpers for chunk and whole-file verification.

Everything reads in fixed 8KB blocks, so memory stays constant no matter how
large the stream is.
"""
import hashlib
import logging
from pathlib import Path
from typing import BinaryIO, Iterable, Optional, Tuple, Union

from ..core.exceptions import StorageError

logger = logging.getLogger(__name__)

BUFFER_SIZE = 8192

PathLike = Union[str, Path]


def _update_from_stream(hasher, stream: BinaryIO) -> int:
    size = 0
    while True:
        block = stream.read(BUFFER_SIZE)
        if not block:
            break
        hasher.update(block)
        size += len(block)
    return size


def digest(stream: BinaryIO) -> str:
    """Compute SHA256 of a binary stream (lowercase hex)."""
    hasher = hashlib.sha256()
    _update_from_stream(hasher, stream)
    return hasher.hexdigest()


def digest_file(path: PathLike) -> str:
    """Compute SHA256 of a file on disk. Raises StorageError if it cannot be read."""
    try:
        with open(path, "rb") as f:
            return digest(f)
    except OSError as e:
        raise StorageError(f"Cannot read {path}: {e}") from e


def copy_and_digest(stream: BinaryIO, destination: PathLike) -> Tuple[str, int]:
    """
    Write a stream to `destination` while hashing it (single pass).

    Returns:
        (sha256_hex, size_bytes)
    """
    hasher = hashlib.sha256()
    size = 0
    try:
        with open(destination, "wb") as out:
            while True:
                block = stream.read(BUFFER_SIZE)
                if not block:
                    break
                hasher.update(block)
                out.write(block)
                size += len(block)
    except OSError as e:
        raise StorageError(f"Cannot write {destination}: {e}") from e
    return hasher.hexdigest(), size


def hashes_match(actual: str, expected: Optional[str]) -> bool:
    if not expected or not expected.strip():
        return False
    return actual.lower() == expected.strip().lower()


def verify_chunk(stream: BinaryIO, expected_hex: Optional[str]) -> bool:
    """
    Check a chunk against the client's checksum.

    Fails closed: a missing/blank checksum, a read error or a mismatch all
    return False. Never raises.
    """
    if not expected_hex or not expected_hex.strip():
        return False
    try:
        actual = digest(stream)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read chunk for verification: {e}")
        return False
    return hashes_match(actual, expected_hex)


def digest_concatenated(ordered_paths: Iterable[PathLike]) -> str:
    """SHA256 over the concatenation of files, in the given order."""
    hasher = hashlib.sha256()
    for path in ordered_paths:
        try:
            with open(path, "rb") as f:
                _update_from_stream(hasher, f)
        except OSError as e:
            raise StorageError(f"Cannot read chunk {path}: {e}") from e
    return hasher.hexdigest()


def verify_concatenated(ordered_paths: Iterable[PathLike], expected_hex: Optional[str]) -> bool:
    """
    Verify the whole file reassembled from its chunks.

    A missing or unreadable chunk raises StorageError; a checksum mismatch
    returns False.
    """
    actual = digest_concatenated(ordered_paths)
    matched = hashes_match(actual, expected_hex)
    if not matched:
        logger.error(f"Whole-file hash mismatch: expected {expected_hex}, got {actual}")
    return matched
