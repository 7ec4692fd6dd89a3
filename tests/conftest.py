"""Pytest configuration and fixtures for streamvault tests."""
import hashlib
import math
import threading
import time
from pathlib import Path

import pytest

from streamvault.core.config import Settings
from streamvault.core.database import build_engine, build_session_factory, init_db
from streamvault.main import build_services
from streamvault.services.process import CommandResult, FFmpegRunner
from streamvault.services.storage import ChunkStore, StoragePaths
from streamvault.services.tracker import InMemoryUploadTracker


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _arg_after(args, flag):
    return args[args.index(flag) + 1]


class FakeFFmpeg:
    """
    Stand-in for the ffmpeg binary.

    Records every invocation and writes the files ffmpeg would have written:
    split pieces (the input bytes cut into `split_parts`), an HLS playlist with
    one segment, or a rendered watermark output. Kinds listed in `fail` exit
    with code 1 and write nothing.
    """

    def __init__(self, split_parts: int = 3, render_delay: float = 0.0):
        self.split_parts = split_parts
        self.render_delay = render_delay
        self.fail = set()
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, cmd, cwd=None, timeout=None) -> CommandResult:
        args = [str(a) for a in cmd]
        kind = self._kind(args)
        with self._lock:
            self.calls.append({"kind": kind, "args": args, "cwd": cwd})

        if kind in self.fail:
            return CommandResult(args=args, return_code=1, output=f"simulated {kind} failure")

        if kind == "split":
            self._split(args)
        elif kind == "hls":
            self._hls(args)
        else:
            if self.render_delay:
                time.sleep(self.render_delay)
            self._render(args)
        return CommandResult(args=args, return_code=0, output="ok")

    def count(self, kind: str) -> int:
        with self._lock:
            return sum(1 for call in self.calls if call["kind"] == kind)

    @staticmethod
    def _kind(args) -> str:
        if "segment" in args and "-segment_time" in args:
            return "split"
        if "hls" in args and "-hls_time" in args:
            return "hls"
        if _arg_after(args, "-i").endswith(".m3u8"):
            return "export"
        return "watermark"

    def _split(self, args):
        data = Path(_arg_after(args, "-i")).read_bytes()
        pattern = args[-1]
        size = max(1, math.ceil(len(data) / self.split_parts))
        pieces = [data[i:i + size] for i in range(0, len(data), size)] or [b""]
        for number, piece in enumerate(pieces):
            Path(pattern % number).write_bytes(piece)

    def _hls(self, args):
        playlist = Path(args[-1])
        segment = Path(_arg_after(args, "-hls_segment_filename") % 0)
        segment.write_bytes(b"hls-segment-0")
        playlist.write_text(
            "#EXTM3U\n#EXT-X-VERSION:3\n#EXT-X-TARGETDURATION:4\n"
            f"#EXTINF:4.0,\n{segment.name}\n#EXT-X-ENDLIST\n"
        )

    def _render(self, args):
        graph = _arg_after(args, "-filter_complex")
        Path(args[-1]).write_bytes(b"rendered:" + graph.encode())


@pytest.fixture
def uploads_root(tmp_path):
    root = tmp_path / "uploads"
    root.mkdir()
    return root


@pytest.fixture
def logo_path(tmp_path):
    path = tmp_path / "logo.png"
    path.write_bytes(b"\x89PNG fake logo")
    return path


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(
        f"sqlite:///{tmp_path / 'streamvault.db'}",
        connect_args={"check_same_thread": False, "timeout": 30}
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def chunk_store(uploads_root):
    return ChunkStore(StoragePaths(uploads_root, "mp4"))


@pytest.fixture
def tracker(chunk_store):
    return InMemoryUploadTracker(chunk_store)


@pytest.fixture
def fake_ffmpeg():
    return FakeFFmpeg()


@pytest.fixture
def runner(fake_ffmpeg):
    return FFmpegRunner(binary="ffmpeg", max_concurrent=2, timeout=30, runner=fake_ffmpeg)


@pytest.fixture
def config(uploads_root, logo_path):
    config = Settings()
    config.UPLOADS_ROOT = str(uploads_root)
    config.CHUNK_EXTENSION = "mp4"
    config.TRACKER_BACKEND = "memory"
    config.WATERMARK_LOGO_PATH = str(logo_path)
    config.WATERMARK_INSTANCE_ID = "X1"
    return config


@pytest.fixture
def services(config, engine, tracker, runner):
    return build_services(config=config, engine=engine, tracker=tracker, runner=runner)
