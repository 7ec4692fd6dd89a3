"""Tests for the split and HLS packaging steps."""
from pathlib import Path

import pytest

from streamvault.core.exceptions import ExternalToolError
from streamvault.services.transcode import TranscodePipeline, build_concat_manifest, quote_concat_path


@pytest.fixture
def pipeline(runner, chunk_store):
    return TranscodePipeline(
        runner=runner,
        chunk_store=chunk_store,
        segment_duration=10,
        hls_segment_seconds=4,
        video_codec="libx264"
    )


def write_chunks(chunk_store, upload_id, count):
    paths = []
    for index in range(1, count + 1):
        path = chunk_store.paths.chunk(upload_id, index)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(f"chunk {index}".encode())
        paths.append(str(path))
    return paths


def test_quote_concat_path_escapes_single_quotes():
    assert quote_concat_path("/data/it's here.mp4") == "'/data/it'\\''s here.mp4'"


def test_manifest_quotes_every_path():
    manifest = build_concat_manifest(["/a/1.mp4", "/a/it's.mp4"])

    assert manifest == "file '/a/1.mp4'\nfile '/a/it'\\''s.mp4'\n"


def test_split_returns_sorted_segments(pipeline, fake_ffmpeg, tmp_path):
    source = tmp_path / "source.mp4"
    source.write_bytes(b"0123456789" * 30)

    segments = pipeline.split(source, "u1")

    assert len(segments) == 3
    assert segments == sorted(segments)
    assert b"".join(Path(s).read_bytes() for s in segments) == source.read_bytes()
    args = fake_ffmpeg.calls[0]["args"]
    assert args[args.index("-segment_time") + 1] == "10"
    assert args[args.index("-c") + 1] == "copy"


def test_split_failure_raises_external_tool_error(pipeline, fake_ffmpeg, tmp_path):
    source = tmp_path / "source.mp4"
    source.write_bytes(b"data")
    fake_ffmpeg.fail.add("split")

    with pytest.raises(ExternalToolError):
        pipeline.split(source, "u1")


def test_format_hls_produces_playlist_and_removes_chunks(pipeline, chunk_store, fake_ffmpeg):
    chunks = write_chunks(chunk_store, "u1", 2)

    playlist = pipeline.format_hls(chunks, "u1")

    assert playlist == str(chunk_store.paths.playlist("u1"))
    assert chunk_store.exists(playlist)
    assert chunk_store.exists(chunk_store.paths.segment("u1", "segment_000.ts"))
    assert not any(chunk_store.exists(c) for c in chunks)
    assert not chunk_store.paths.manifest("u1").exists()

    call = fake_ffmpeg.calls[0]
    assert call["cwd"] == str(chunk_store.paths.upload_dir("u1"))
    args = call["args"]
    assert args[args.index("-f") + 1] == "concat"
    assert args[args.index("-hls_time") + 1] == "4"
    assert args[args.index("-hls_list_size") + 1] == "0"
    assert args[args.index("-g") + 1] == args[args.index("-keyint_min") + 1]


def test_format_hls_failure_keeps_chunks(pipeline, chunk_store, fake_ffmpeg):
    chunks = write_chunks(chunk_store, "u1", 3)
    fake_ffmpeg.fail.add("hls")

    with pytest.raises(ExternalToolError):
        pipeline.format_hls(chunks, "u1")

    assert all(chunk_store.exists(c) for c in chunks)
    assert not chunk_store.paths.playlist("u1").exists()


def test_format_hls_writes_manifest_in_chunk_order(pipeline, chunk_store, mocker):
    chunks = write_chunks(chunk_store, "u1", 3)
    written = {}
    original_check = pipeline.runner.check

    def capture(args, action, cwd=None):
        written["manifest"] = chunk_store.paths.manifest("u1").read_text()
        return original_check(args, action, cwd=cwd)

    mocker.patch.object(pipeline.runner, "check", side_effect=capture)
    pipeline.format_hls(chunks, "u1")

    assert written["manifest"] == "".join(f"file '{c}'\n" for c in chunks)


def test_copy_codec_skips_reencode(runner, chunk_store):
    pipeline = TranscodePipeline(runner=runner, chunk_store=chunk_store, video_codec="copy")

    assert pipeline._video_args() == ["-c:v", "copy"]
