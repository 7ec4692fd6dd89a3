"""Tests for upload tracking and completeness validation."""
import threading

import fakeredis
import pytest

from streamvault.core.exceptions import IncompleteUploadError, NotFoundError
from streamvault.services.tracker import RedisUploadTracker, UploadSession


def test_contiguous_chunks_return_ordered_paths(tracker, chunk_store):
    tracker.register_upload("u1", 3)
    for index in (3, 1, 2):
        tracker.register_chunk("u1", index)

    paths = tracker.validate_and_get_chunk_paths("u1")

    assert paths == [chunk_store.path_for("u1", i) for i in (1, 2, 3)]
    assert paths[0].endswith("/u1/1.mp4")


def test_gap_is_rejected(tracker):
    tracker.register_upload("u1", 3)
    tracker.register_chunk("u1", 1)
    tracker.register_chunk("u1", 3)

    with pytest.raises(IncompleteUploadError) as exc_info:
        tracker.validate_and_get_chunk_paths("u1")

    assert exc_info.value.missing == [2]


def test_duplicate_registration_cannot_hide_a_gap(tracker):
    tracker.register_upload("u1", 3)
    for index in (1, 2, 2):
        tracker.register_chunk("u1", index)

    with pytest.raises(IncompleteUploadError) as exc_info:
        tracker.validate_and_get_chunk_paths("u1")

    assert exc_info.value.missing == [3]


def test_out_of_range_index_fails_exact_set_check(tracker):
    tracker.register_upload("u1", 3)
    for index in (1, 2, 4):
        tracker.register_chunk("u1", index)

    with pytest.raises(IncompleteUploadError) as exc_info:
        tracker.validate_and_get_chunk_paths("u1")

    assert exc_info.value.missing == [3]
    assert exc_info.value.unexpected == [4]


def test_unknown_upload_raises_not_found(tracker):
    with pytest.raises(NotFoundError):
        tracker.validate_and_get_chunk_paths("missing")


def test_register_chunk_for_unknown_upload_raises(tracker):
    with pytest.raises(NotFoundError):
        tracker.register_chunk("missing", 1)


def test_reinit_replaces_prior_state(tracker):
    tracker.register_upload("u1", 3)
    tracker.register_chunk("u1", 1)
    tracker.register_chunk("u1", 2)

    tracker.register_upload("u1", 2)

    session = tracker.get_session("u1")
    assert session.expected_chunk_count == 2
    assert session.received_chunk_indices == set()


def test_cleanup_removes_state_and_is_idempotent(tracker):
    tracker.register_upload("u1", 1)
    tracker.cleanup("u1")
    tracker.cleanup("u1")

    assert tracker.get_session("u1") is None


def test_concurrent_registrations_are_all_recorded(tracker):
    total = 64
    tracker.register_upload("u1", total)
    barrier = threading.Barrier(8)

    def register(indices):
        barrier.wait()
        for index in indices:
            tracker.register_chunk("u1", index)

    threads = [
        threading.Thread(target=register, args=(range(start, total + 1, 8),))
        for start in range(1, 9)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(tracker.validate_and_get_chunk_paths("u1")) == total


def test_session_snapshot_is_a_copy(tracker):
    tracker.register_upload("u1", 2)
    snapshot = tracker.get_session("u1")
    snapshot.received_chunk_indices.add(1)

    assert tracker.get_session("u1").received_chunk_indices == set()


def test_upload_session_properties():
    session = UploadSession(3, {1, 3, 5})

    assert session.missing == [2]
    assert session.unexpected == [5]
    assert session.is_complete is False
    assert UploadSession(2, {1, 2}).is_complete is True


class TestRedisUploadTracker:

    @pytest.fixture
    def client(self):
        return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)

    @pytest.fixture
    def redis_tracker(self, client, chunk_store):
        return RedisUploadTracker(chunk_store, client=client, ttl_seconds=3600)

    def test_register_upload_stores_total_with_ttl(self, redis_tracker, client):
        redis_tracker.register_upload("abc", 3)

        assert client.hget("upload:abc", "total") == "3"
        assert 0 < client.ttl("upload:abc") <= 3600

    def test_reinit_clears_received_chunks(self, redis_tracker, client):
        redis_tracker.register_upload("abc", 3)
        redis_tracker.register_chunk("abc", 1)

        redis_tracker.register_upload("abc", 2)

        assert redis_tracker.get_session("abc") == UploadSession(2, set())

    def test_chunks_are_recorded_as_a_set(self, redis_tracker, client):
        redis_tracker.register_upload("abc", 2)
        for index in (2, 1, 2):
            redis_tracker.register_chunk("abc", index)

        assert client.smembers("upload:abc:chunks") == {"1", "2"}
        assert 0 < client.ttl("upload:abc:chunks") <= 3600
        assert redis_tracker.validate_and_get_chunk_paths("abc") == [
            redis_tracker.chunk_store.path_for("abc", 1),
            redis_tracker.chunk_store.path_for("abc", 2),
        ]

    def test_validate_detects_gap(self, redis_tracker):
        redis_tracker.register_upload("abc", 3)
        redis_tracker.register_chunk("abc", 1)
        redis_tracker.register_chunk("abc", 3)

        with pytest.raises(IncompleteUploadError) as exc_info:
            redis_tracker.validate_and_get_chunk_paths("abc")

        assert exc_info.value.missing == [2]

    def test_unknown_upload_has_no_session(self, redis_tracker):
        assert redis_tracker.get_session("abc") is None
        with pytest.raises(NotFoundError):
            redis_tracker.validate_and_get_chunk_paths("abc")

    def test_chunk_for_unregistered_upload_is_rejected(self, redis_tracker, client):
        with pytest.raises(NotFoundError):
            redis_tracker.register_chunk("abc", 1)

        assert client.keys("upload:*") == []

    def test_chunk_after_cleanup_leaves_no_keys_behind(self, redis_tracker, client):
        redis_tracker.register_upload("abc", 2)
        redis_tracker.register_chunk("abc", 1)
        redis_tracker.cleanup("abc")

        with pytest.raises(NotFoundError):
            redis_tracker.register_chunk("abc", 2)

        assert client.keys("upload:*") == []

    def test_cleanup_is_idempotent(self, redis_tracker, client):
        redis_tracker.register_upload("abc", 1)
        redis_tracker.cleanup("abc")
        redis_tracker.cleanup("abc")

        assert client.keys("upload:*") == []
