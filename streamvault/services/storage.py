"""
Local filesystem chunk store with deterministic, index-addressed paths
"""
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import BinaryIO, Union

from ..core.config import settings
from ..core.exceptions import StorageError

logger = logging.getLogger(__name__)

COPY_BUFFER_SIZE = 1024 * 1024


class StoragePaths:
    """
    Centralized storage path definitions.

    Structure (all under the uploads root):
        {upload_id}/
            1.mp4, 2.mp4, ...          raw chunks (removed after packaging)
            concat.txt                 ffmpeg concat manifest (transient)
            split_xxxx/                ffmpeg split output (transient)
            playlist.m3u8
            segment_000.ts, ...
            watermarked/
                segment_000.ts, ...    cached watermarked segments
            export.mp4                 cached watermarked export
    """

    PLAYLIST_NAME = "playlist.m3u8"
    HLS_SEGMENT_PATTERN = "segment_%03d.ts"
    MANIFEST_NAME = "concat.txt"
    WATERMARK_DIR = "watermarked"
    EXPORT_NAME = "export.mp4"

    def __init__(self, root: Union[str, Path] = None, chunk_extension: str = None):
        self.root = Path(root or settings.UPLOADS_ROOT).absolute()
        self.chunk_extension = (chunk_extension or settings.CHUNK_EXTENSION).lstrip(".")

    def upload_dir(self, upload_id: str) -> Path:
        return self.root / self._safe_name(upload_id)

    def chunk(self, upload_id: str, index: int) -> Path:
        """Path to a raw chunk."""
        return self.upload_dir(upload_id) / f"{index}.{self.chunk_extension}"

    def manifest(self, upload_id: str) -> Path:
        return self.upload_dir(upload_id) / self.MANIFEST_NAME

    def playlist(self, upload_id: str) -> Path:
        """Path to the HLS playlist."""
        return self.upload_dir(upload_id) / self.PLAYLIST_NAME

    def hls_segment_pattern(self, upload_id: str) -> Path:
        return self.upload_dir(upload_id) / self.HLS_SEGMENT_PATTERN

    def segment(self, upload_id: str, segment_name: str) -> Path:
        """Path to an original (unwatermarked) HLS segment."""
        return self.upload_dir(upload_id) / self._safe_name(segment_name)

    def watermarked_segment(self, upload_id: str, segment_name: str) -> Path:
        """Path to the cached watermarked copy of a segment."""
        return self.upload_dir(upload_id) / self.WATERMARK_DIR / self._safe_name(segment_name)

    def export(self, upload_id: str) -> Path:
        """Path to the cached full export."""
        return self.upload_dir(upload_id) / self.EXPORT_NAME

    @staticmethod
    def _safe_name(name: str) -> str:
        name = str(name)
        if not name or name in (".", "..") or "/" in name or "\\" in name or "\x00" in name:
            raise ValueError(f"Invalid path component: {name!r}")
        return name


class ChunkStore:
    """
    Writes chunk N of upload U to `<root>/<U>/<N>.<ext>` and reads files back.

    Writes go to a temp file in the target directory and are renamed into
    place, so the final path never holds a partially written chunk.
    """

    def __init__(self, paths: StoragePaths = None):
        self.paths = paths or StoragePaths()

    def path_for(self, upload_id: str, index: int) -> str:
        return str(self.paths.chunk(upload_id, index))

    def upload(self, upload_id: str, index: int, stream: BinaryIO) -> str:
        """
        Store one chunk, replacing any previous copy of the same index.

        Returns:
            Absolute path written
        """
        destination = self.paths.chunk(upload_id, index)
        temp_path = None
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=destination.parent, prefix=f".{index}.", suffix=".part")
            with os.fdopen(fd, "wb") as out:
                shutil.copyfileobj(stream, out, COPY_BUFFER_SIZE)
            os.replace(temp_path, destination)
            temp_path = None
        except OSError as e:
            logger.error(f"[{upload_id}] Failed to store chunk {index}: {e}")
            raise StorageError(f"Failed to store chunk {index} for upload {upload_id}") from e
        finally:
            if temp_path:
                self.delete(temp_path)

        logger.debug(f"[{upload_id}] Stored chunk {index} at {destination}")
        return str(destination)

    def load(self, path: Union[str, Path]) -> BinaryIO:
        """Open a stored file for streaming read."""
        try:
            return open(path, "rb")
        except FileNotFoundError as e:
            raise StorageError(f"File not found: {path}") from e
        except OSError as e:
            raise StorageError(f"Cannot open {path}: {e}") from e

    def exists(self, path: Union[str, Path]) -> bool:
        return Path(path).is_file()

    def delete(self, path: Union[str, Path]) -> bool:
        """Best-effort delete. Failures are logged, never raised."""
        try:
            Path(path).unlink(missing_ok=True)
            return True
        except OSError as e:
            logger.warning(f"Failed to delete {path}: {e}")
            return False

    def remove_upload(self, upload_id: str) -> None:
        """Best-effort removal of everything stored for an upload."""
        upload_dir = self.paths.upload_dir(upload_id)
        if upload_dir.exists():
            shutil.rmtree(upload_dir, ignore_errors=True)
            logger.info(f"[{upload_id}] Removed upload directory {upload_dir}")
