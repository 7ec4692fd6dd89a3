"""
Watermark engine: per-(user, file) code assignment and cached overlay
rendering.

Rendered artifacts live at deterministic paths and their presence is the
cache. Rendering writes to a sibling temp file that is renamed into place,
so an artifact path is either complete or absent. Concurrent requests for
the same artifact are collapsed into one ffmpeg run.
"""
import logging
import os
from pathlib import Path
from typing import Optional, Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import sessionmaker

from ..core.config import settings
from ..core.database import session_scope
from ..core.exceptions import NotFoundError, StorageError
from ..models import WatermarkAssignment
from .codes import CodeGenerator
from .process import FFmpegRunner
from .single_flight import KeyedLock

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

LOGO_FILTER = "[1:v]scale=50:-1[logo]; [0:v][logo]overlay=W-w-15:H-h-15"
BADGE_FILTER = (
    "[v1];[v1]drawtext=text='{text}':fontcolor=white:fontsize=24"
    ":box=1:boxcolor=black@0.5:boxborderw=5:x=10:y=10"
)
MAX_CODE_ATTEMPTS = 3


def escape_drawtext(text: str) -> str:
    """Escape a value for use inside a quoted drawtext text= option."""
    return text.replace("\\", "\\\\").replace(":", "\\:").replace("'", "'\\\\''")


def build_filter_graph(code: Optional[str]) -> str:
    graph = LOGO_FILTER
    if code:
        graph += BADGE_FILTER.format(text=escape_drawtext(code))
    return graph


class WatermarkService:
    """Create-or-fetch of the code assigned to a (user, file) pair."""

    def __init__(self, session_factory: sessionmaker, generator: CodeGenerator = None):
        self.session_factory = session_factory
        self.generator = generator or CodeGenerator()

    def find_code(self, user_id: str, file_id: str) -> Optional[str]:
        with session_scope(self.session_factory) as db:
            return db.execute(
                select(WatermarkAssignment.code).where(
                    WatermarkAssignment.user_id == user_id,
                    WatermarkAssignment.file_id == file_id
                )
            ).scalar_one_or_none()

    def get_or_create_code(self, user_id: str, file_id: str) -> str:
        """
        Return the pair's code, creating it on first access.

        Insert-or-fetch-on-conflict: two racing first requests both try to
        insert, the unique constraint lets one win, and the loser reads the
        winner's row.
        """
        for attempt in range(1, MAX_CODE_ATTEMPTS + 1):
            code = self.find_code(user_id, file_id)
            if code is not None:
                return code

            candidate = self.generator.generate()
            try:
                with session_scope(self.session_factory) as db:
                    db.add(WatermarkAssignment(user_id=user_id, file_id=file_id, code=candidate))
                logger.info(f"Assigned watermark code {candidate} to user {user_id} for file {file_id}")
                return candidate
            except DBIntegrityError:
                # Either the pair was assigned concurrently or the code collided
                logger.info(f"Watermark insert conflict for user {user_id}, file {file_id} (attempt {attempt})")

        code = self.find_code(user_id, file_id)
        if code is None:
            raise NotFoundError(f"Could not assign a watermark code for user {user_id}, file {file_id}")
        return code


class WatermarkRenderer:
    """Burns the logo and code badge into segments and exports via ffmpeg."""

    def __init__(self, runner: FFmpegRunner = None, logo_path: PathLike = None, crf: int = 20):
        self.runner = runner or FFmpegRunner()
        self.logo_path = Path(logo_path or settings.WATERMARK_LOGO_PATH)
        self.crf = crf
        self._in_flight = KeyedLock()

    def render_segment(self, original_segment_path: PathLike, output_path: PathLike, code: Optional[str]) -> str:
        """Watermark one HLS segment. Existing output is returned untouched."""
        return self._render(original_segment_path, output_path, code, action="watermark")

    def render_export(self, playlist_path: PathLike, output_path: PathLike, code: Optional[str]) -> str:
        """Watermark the whole playlist into a single file. Existing output is returned untouched."""
        return self._render(playlist_path, output_path, code, action="export")

    def _render(self, source: PathLike, output: PathLike, code: Optional[str], action: str) -> str:
        output = Path(output).absolute()
        if output.is_file():
            logger.debug(f"Cache hit for {output}")
            return str(output)

        with self._in_flight.hold(str(output)):
            # Another request may have finished the same artifact while we waited
            if output.is_file():
                logger.debug(f"Rendered concurrently: {output}")
                return str(output)

            source = Path(source).absolute()
            if not source.is_file():
                raise StorageError(f"Source not found: {source}")
            if not self.logo_path.is_file():
                logger.error(f"Watermark logo not found at {self.logo_path}")
                raise StorageError(f"Watermark logo not found: {self.logo_path}")

            try:
                output.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"Cannot create {output.parent}") from e

            # Keep the real extension last so ffmpeg picks the right muxer
            temp_output = output.with_name(f".{output.stem}.partial{output.suffix}")
            cmd = [
                "-y",
                "-copyts",
                "-i", str(source),
                "-i", str(self.logo_path.absolute()),
                "-filter_complex", build_filter_graph(code),
                "-c:v", "libx264",
                "-crf", str(self.crf),
                "-an",
                "-muxdelay", "0",
                str(temp_output)
            ]

            logger.info(f"Rendering {action} for {source.name} -> {output}")
            try:
                self.runner.check(cmd, action=action)
                os.replace(temp_output, output)
            except OSError as e:
                raise StorageError(f"Cannot move rendered {action} into place at {output}") from e
            finally:
                if temp_output.exists():
                    try:
                        temp_output.unlink()
                    except OSError as e:
                        logger.warning(f"Failed to remove partial output {temp_output}: {e}")

            logger.info(f"Rendered {action}: {output.name}")
            return str(output)
