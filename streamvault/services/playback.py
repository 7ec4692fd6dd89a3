"""
Playback and export: serves the HLS playlist, watermarked segments and the
watermarked full export for a finalized upload.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from ..core.exceptions import InvalidUploadStateError, NotFoundError, StorageError
from .records import FileRepository
from .storage import ChunkStore
from .watermark import WatermarkRenderer, WatermarkService

logger = logging.getLogger(__name__)

PLAYLIST_MEDIA_TYPE = "application/vnd.apple.mpegurl"
SEGMENT_MEDIA_TYPE = "video/mp2t"
EXPORT_MEDIA_TYPE = "video/mp4"


@dataclass(frozen=True)
class MediaAsset:
    path: str
    media_type: str
    watermarked: bool = False

    @property
    def filename(self) -> str:
        return Path(self.path).name

    def read_bytes(self) -> bytes:
        try:
            return Path(self.path).read_bytes()
        except OSError as e:
            raise StorageError(f"Cannot read {self.path}: {e}") from e


class PlaybackService:
    def __init__(
        self,
        files: FileRepository,
        chunk_store: ChunkStore,
        watermarks: WatermarkService,
        renderer: WatermarkRenderer
    ):
        self.files = files
        self.chunk_store = chunk_store
        self.paths = chunk_store.paths
        self.watermarks = watermarks
        self.renderer = renderer

    def _require_playable(self, upload_id: str):
        record = self.files.require(upload_id)
        if not record.valid:
            raise InvalidUploadStateError(f"Upload {upload_id} has not been finalized")
        return record

    def get_playlist(self, upload_id: str) -> MediaAsset:
        self._require_playable(upload_id)
        path = self.paths.playlist(upload_id)
        logger.debug(f"[{upload_id}] Loading playlist from {path}")
        if not self.chunk_store.exists(path):
            raise StorageError(f"Playlist missing for upload {upload_id}")
        return MediaAsset(str(path), PLAYLIST_MEDIA_TYPE)

    def get_segment(self, upload_id: str, segment_name: str, user_id: str) -> MediaAsset:
        """
        Serve a segment stamped with the user's code.

        A storage failure while rendering falls back to the original
        segment. An ffmpeg failure is raised.
        """
        self._require_playable(upload_id)
        try:
            original = self.paths.segment(upload_id, segment_name)
            watermarked = self.paths.watermarked_segment(upload_id, segment_name)
        except ValueError as e:
            raise NotFoundError(f"Invalid segment name {segment_name!r}") from e

        if not self.chunk_store.exists(original):
            raise NotFoundError(f"Segment {segment_name} not found for upload {upload_id}")

        logger.debug(f"[{upload_id}] Requesting segment {segment_name} for user {user_id}")
        try:
            code = self.watermarks.get_or_create_code(user_id, upload_id)
            path = self.renderer.render_segment(original, watermarked, code)
            return MediaAsset(path, SEGMENT_MEDIA_TYPE, watermarked=True)
        except StorageError as e:
            logger.error(f"[{upload_id}] Error watermarking segment {segment_name}: {e}")
            logger.warning(f"[{upload_id}] Falling back to original segment due to watermark error")
            return MediaAsset(str(original), SEGMENT_MEDIA_TYPE)

    def export(self, upload_id: str, user_id: str) -> MediaAsset:
        """Serve the full video as one watermarked mp4, rendering it on first request."""
        self._require_playable(upload_id)
        playlist = self.paths.playlist(upload_id)
        output = self.paths.export(upload_id)

        if self.chunk_store.exists(output):
            logger.debug(f"[{upload_id}] Serving cached export {output}")
            return MediaAsset(str(output), EXPORT_MEDIA_TYPE, watermarked=True)

        logger.info(f"[{upload_id}] Generating export for user {user_id}")
        code = self.watermarks.get_or_create_code(user_id, upload_id)
        path = self.renderer.render_export(playlist, output, code)
        return MediaAsset(path, EXPORT_MEDIA_TYPE, watermarked=True)

    def open(self, asset: MediaAsset) -> BinaryIO:
        return self.chunk_store.load(asset.path)
