"""
Service wiring.

build_services() assembles every component from settings. Any piece can be
passed in explicitly, which is how the tests swap in SQLite and a fake
ffmpeg.
"""
import logging
from dataclasses import dataclass

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .core.config import Settings, settings as default_settings
from .core.database import build_engine, build_session_factory, init_db
from .core.logging import configure_logging
from .services.codes import CodeGenerator
from .services.playback import PlaybackService
from .services.process import FFmpegRunner
from .services.records import ChunkRepository, FileRepository
from .services.storage import ChunkStore, StoragePaths
from .services.tracker import InMemoryUploadTracker, RedisUploadTracker, UploadTracker
from .services.transcode import TranscodePipeline
from .services.upload import UploadService
from .services.watermark import WatermarkRenderer, WatermarkService

logger = logging.getLogger(__name__)


@dataclass
class Services:
    engine: Engine
    session_factory: sessionmaker
    chunk_store: ChunkStore
    tracker: UploadTracker
    runner: FFmpegRunner
    pipeline: TranscodePipeline
    watermarks: WatermarkService
    renderer: WatermarkRenderer
    uploads: UploadService
    playback: PlaybackService


def build_tracker(chunk_store: ChunkStore, config: Settings = default_settings) -> UploadTracker:
    backend = config.TRACKER_BACKEND.lower()
    if backend == "memory":
        logger.info("Using in-memory upload tracker")
        return InMemoryUploadTracker(chunk_store)
    if backend == "redis":
        logger.info(f"Using Redis upload tracker at {config.REDIS_URL}")
        return RedisUploadTracker(chunk_store, redis_url=config.REDIS_URL, ttl_seconds=config.UPLOAD_TTL_SECONDS)
    raise ValueError(f"Unknown TRACKER_BACKEND: {config.TRACKER_BACKEND}")


def build_services(
    config: Settings = default_settings,
    engine: Engine = None,
    tracker: UploadTracker = None,
    runner: FFmpegRunner = None,
    create_tables: bool = True
) -> Services:
    """Create the full service graph."""
    engine = engine or build_engine(config.DATABASE_URL)
    if create_tables:
        init_db(engine)
    session_factory = build_session_factory(engine)

    chunk_store = ChunkStore(StoragePaths(config.UPLOADS_ROOT, config.CHUNK_EXTENSION))
    tracker = tracker or build_tracker(chunk_store, config)
    runner = runner or FFmpegRunner(
        binary=config.FFMPEG_BINARY,
        max_concurrent=config.MAX_CONCURRENT_TRANSCODES,
        timeout=config.FFMPEG_TIMEOUT_SECONDS
    )
    pipeline = TranscodePipeline(
        runner=runner,
        chunk_store=chunk_store,
        segment_duration=config.SEGMENT_DURATION_SECONDS,
        hls_segment_seconds=config.HLS_SEGMENT_SECONDS,
        video_codec=config.HLS_VIDEO_CODEC
    )

    files = FileRepository(session_factory)
    watermarks = WatermarkService(session_factory, CodeGenerator(config.WATERMARK_INSTANCE_ID))
    renderer = WatermarkRenderer(runner=runner, logo_path=config.WATERMARK_LOGO_PATH)

    uploads = UploadService(files, ChunkRepository(session_factory), tracker, chunk_store, pipeline)
    playback = PlaybackService(files, chunk_store, watermarks, renderer)

    logger.info(f"{config.APP_TITLE} v{config.APP_VERSION} services ready (uploads root: {chunk_store.paths.root})")
    return Services(
        engine=engine,
        session_factory=session_factory,
        chunk_store=chunk_store,
        tracker=tracker,
        runner=runner,
        pipeline=pipeline,
        watermarks=watermarks,
        renderer=renderer,
        uploads=uploads,
        playback=playback
    )


if __name__ == "__main__":
    configure_logging()
    services = build_services()
    logger.info(f"Database ready at {services.engine.url.render_as_string(hide_password=True)}")
