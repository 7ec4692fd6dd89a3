"""Services module exports"""
from .codes import CodeGenerator
from .playback import MediaAsset, PlaybackService
from .process import CommandResult, FFmpegRunner, run_command
from .records import ChunkRepository, FileRepository
from .single_flight import KeyedLock
from .storage import ChunkStore, StoragePaths
from .tracker import InMemoryUploadTracker, RedisUploadTracker, UploadSession, UploadTracker
from .transcode import TranscodePipeline
from .upload import UploadService
from .watermark import WatermarkRenderer, WatermarkService

__all__ = [
    "CodeGenerator",
    "MediaAsset",
    "PlaybackService",
    "CommandResult",
    "FFmpegRunner",
    "run_command",
    "ChunkRepository",
    "FileRepository",
    "KeyedLock",
    "ChunkStore",
    "StoragePaths",
    "UploadTracker",
    "UploadSession",
    "InMemoryUploadTracker",
    "RedisUploadTracker",
    "TranscodePipeline",
    "UploadService",
    "WatermarkRenderer",
    "WatermarkService",
]
