"""
Transcode pipeline: split raw uploads into segments and package chunk
sequences as HLS.

Logic:
  - split: ffmpeg segment muxer with stream copy, fixed-duration pieces
  - format_hls: concat manifest + one ffmpeg run producing playlist.m3u8,
    then the raw chunks and manifest are removed
"""
import logging
import tempfile
from pathlib import Path
from typing import List, Sequence, Union

from ..core.config import settings
from ..core.exceptions import StorageError
from .process import FFmpegRunner
from .storage import ChunkStore, StoragePaths

logger = logging.getLogger(__name__)

SPLIT_SEGMENT_PATTERN = "segment_%04d.ts"


def quote_concat_path(path: Union[str, Path]) -> str:
    """
    Quote a path for the ffmpeg concat demuxer.

    Every path is wrapped in single quotes; an embedded single quote closes
    the quoted run, is escaped, and reopens it ('\\'').
    """
    escaped = str(path).replace("'", "'\\''")
    return f"'{escaped}'"


def build_concat_manifest(paths: Sequence[Union[str, Path]]) -> str:
    return "".join(f"file {quote_concat_path(p)}\n" for p in paths)


class TranscodePipeline:
    """Batch ffmpeg operations over files on disk. Nothing is retried here."""

    def __init__(
        self,
        runner: FFmpegRunner = None,
        chunk_store: ChunkStore = None,
        segment_duration: int = None,
        hls_segment_seconds: int = None,
        video_codec: str = None
    ):
        self.runner = runner or FFmpegRunner()
        self.chunk_store = chunk_store or ChunkStore()
        self.paths: StoragePaths = self.chunk_store.paths
        self.segment_duration = segment_duration or settings.SEGMENT_DURATION_SECONDS
        self.hls_segment_seconds = hls_segment_seconds or settings.HLS_SEGMENT_SECONDS
        self.video_codec = video_codec or settings.HLS_VIDEO_CODEC

    def split(self, source_file: Union[str, Path], upload_id: str) -> List[str]:
        """
        Split a source video into fixed-duration pieces (stream copy).

        Returns:
            Segment paths sorted lexicographically (= chronological order)

        Raises:
            ExternalToolError: ffmpeg failed
            StorageError: output directory could not be created or read
        """
        logger.info(f"[{upload_id}] Splitting {Path(source_file).name} into {self.segment_duration}s segments")
        try:
            upload_dir = self.paths.upload_dir(upload_id)
            upload_dir.mkdir(parents=True, exist_ok=True)
            split_dir = Path(tempfile.mkdtemp(dir=upload_dir, prefix="split_"))
        except OSError as e:
            raise StorageError(f"Cannot prepare split directory for upload {upload_id}") from e

        cmd = [
            "-i", str(Path(source_file).absolute()),
            "-c", "copy",
            "-map", "0",
            "-f", "segment",
            "-segment_time", str(self.segment_duration),
            "-reset_timestamps", "1",
            "-y",
            str(split_dir / SPLIT_SEGMENT_PATTERN)
        ]
        self.runner.check(cmd, action="split")

        try:
            segments = sorted(str(p) for p in split_dir.glob("segment_*.ts"))
        except OSError as e:
            raise StorageError(f"Cannot list split output in {split_dir}") from e

        logger.info(f"[{upload_id}] Split complete: {len(segments)} segments")
        return segments

    def format_hls(self, ordered_chunk_paths: Sequence[Union[str, Path]], upload_id: str) -> str:
        """
        Join an ordered chunk list into an HLS playlist with a single ffmpeg run.

        On success the chunks and the manifest are deleted. On failure the
        chunks are left in place so the call can be retried.

        Returns:
            Path to playlist.m3u8
        """
        logger.info(f"[{upload_id}] Packaging {len(ordered_chunk_paths)} chunks as HLS")
        manifest_path = self.paths.manifest(upload_id)
        playlist_path = self.paths.playlist(upload_id)

        try:
            manifest_path.parent.mkdir(parents=True, exist_ok=True)
            manifest_path.write_text(build_concat_manifest(ordered_chunk_paths), encoding="utf-8")
        except OSError as e:
            raise StorageError(f"Cannot write concat manifest for upload {upload_id}") from e

        cmd = [
            "-f", "concat",
            "-safe", "0",
            "-i", str(manifest_path),
            *self._video_args(),
            "-c:a", "copy",
            "-hls_time", str(self.hls_segment_seconds),
            "-hls_list_size", "0",
            "-hls_flags", "independent_segments",
            "-hls_segment_filename", str(self.paths.hls_segment_pattern(upload_id)),
            "-f", "hls",
            "-y",
            str(playlist_path)
        ]

        try:
            self.runner.check(cmd, action="hls", cwd=str(manifest_path.parent))
        except Exception:
            self.chunk_store.delete(manifest_path)
            raise

        logger.info(f"[{upload_id}] HLS packaged at {playlist_path}. Removing chunks")
        for chunk in ordered_chunk_paths:
            self.chunk_store.delete(chunk)
        self.chunk_store.delete(manifest_path)
        return str(playlist_path)

    def _video_args(self) -> List[str]:
        if self.video_codec == "copy":
            return ["-c:v", "copy"]
        # Pin the GOP so every HLS segment starts on a keyframe
        gop = str(self.hls_segment_seconds * 15)
        return [
            "-c:v", self.video_codec,
            "-preset", "veryfast",
            "-g", gop,
            "-keyint_min", gop,
            "-sc_threshold", "0"
        ]
