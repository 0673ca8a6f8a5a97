"""Tests for store.py - video, config and status persistence."""

from __future__ import annotations

from pathlib import Path

import pytest

from store import StatusRow, Store
from stream_command import StreamTarget


@pytest.fixture
def store(tmp_path: Path):
    """Store with a fresh database and uploads dir in a temp directory."""
    s = Store(tmp_path / "db" / "relay.db", tmp_path / "uploads")
    yield s
    s.close()


class TestInit:
    def test_creates_tables(self, store: Store):
        conn = store._get_conn()
        tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        names = {t["name"] for t in tables}
        assert {"videos", "stream_configs", "stream_status"} <= names

    def test_reopen_keeps_data(self, tmp_path: Path):
        first = Store(tmp_path / "relay.db", tmp_path)
        first.add_video("Keep", "keep.mp4")
        first.set_loop(True)
        first.close()

        second = Store(tmp_path / "relay.db", tmp_path)
        assert [a.title for a in second.list_assets()] == ["Keep"]
        assert second.read_status().loop_playlist is True
        second.close()


class TestVideos:
    def test_add_appends_to_playlist(self, store: Store):
        a = store.add_video("A", "a.mp4", file_size=1024, duration="01:30")
        b = store.add_video("B", "b.mp4")
        assert a.playlist_order == 1
        assert b.playlist_order == 2
        assert a.file_size == 1024
        assert a.duration == "01:30"
        assert a.path == store.uploads_dir / "a.mp4"

    def test_empty_title(self, store: Store):
        assert store.add_video("", "x.mp4").title == "Untitled Video"

    def test_get_missing(self, store: Store):
        assert store.get_asset(42) is None
        assert store.get_asset(None) is None

    def test_list_order_ties_by_id(self, store: Store):
        store.add_video("B", "b.mp4", playlist_order=2)
        store.add_video("A", "a.mp4", playlist_order=1)
        store.add_video("C", "c.mp4", playlist_order=2)
        assert [a.title for a in store.list_assets()] == ["A", "B", "C"]

    def test_rename(self, store: Store):
        a = store.add_video("Old", "a.mp4")
        renamed = store.rename_video(a.id, "New")
        assert renamed is not None and renamed.title == "New"
        assert store.rename_video(99, "Nope") is None

    def test_delete_removes_file(self, store: Store):
        store.uploads_dir.mkdir()
        path = store.uploads_dir / "a.mp4"
        path.write_bytes(b"\x00")
        a = store.add_video("A", "a.mp4")
        assert store.delete_video(a.id) is True
        assert not path.exists()
        assert store.get_asset(a.id) is None
        assert store.delete_video(a.id) is False

    def test_delete_keep_file(self, store: Store):
        store.uploads_dir.mkdir()
        path = store.uploads_dir / "a.mp4"
        path.write_bytes(b"\x00")
        a = store.add_video("A", "a.mp4")
        store.delete_video(a.id, remove_file=False)
        assert path.exists()

    def test_delete_missing_file_ok(self, store: Store):
        a = store.add_video("A", "gone.mp4")
        assert store.delete_video(a.id) is True

    def test_reorder(self, store: Store):
        ids = [store.add_video(t, f"{t}.mp4").id for t in "ABC"]
        store.reorder([ids[2], ids[0], ids[1]])
        assets = store.list_assets()
        assert [a.title for a in assets] == ["C", "A", "B"]
        assert [a.playlist_order for a in assets] == [1, 2, 3]


class TestStreamConfig:
    def test_none_before_save(self, store: Store):
        assert store.get_active_target() is None

    def test_save_and_load(self, store: Store):
        target = StreamTarget(
            platform="twitch",
            stream_key="live_123",
            resolution="1280x720",
            framerate=60,
            bitrate=6000,
            audio_bitrate=160,
        )
        store.save_target(target)
        assert store.get_active_target() == target

    def test_latest_save_is_active(self, store: Store):
        store.save_target(StreamTarget(platform="youtube", stream_key="old"))
        store.save_target(StreamTarget(platform="custom", rtmp_url="rtmp://x/live"))
        active = store.get_active_target()
        assert active is not None
        assert active.platform == "custom"
        assert active.rtmp_url == "rtmp://x/live"
        count = store._get_conn().execute(
            "SELECT COUNT(*) FROM stream_configs WHERE is_active = 1"
        ).fetchone()[0]
        assert count == 1

    def test_empty_resolution_stored_as_original(self, store: Store):
        store.save_target(StreamTarget(platform="youtube", stream_key="k", resolution=""))
        active = store.get_active_target()
        assert active is not None and active.resolution == "original"


class TestStatus:
    def test_default_row(self, store: Store):
        assert store.read_status() == StatusRow()

    def test_write_status(self, store: Store):
        store.write_status("live", 3, "00:00:05", 1700000000.0)
        row = store.read_status()
        assert row.status == "live"
        assert row.current_video_id == 3
        assert row.uptime == "00:00:05"
        assert row.started_at == 1700000000.0

    def test_write_uptime_only(self, store: Store):
        store.write_status("live", 3, "00:00:00", 1.0)
        store.write_uptime("00:01:00")
        row = store.read_status()
        assert row.uptime == "00:01:00"
        assert row.status == "live"
        assert row.current_video_id == 3

    def test_set_current_and_loop(self, store: Store):
        store.set_current(5)
        store.set_loop(True)
        row = store.read_status()
        assert row.current_video_id == 5
        assert row.loop_playlist is True
        store.set_current(None)
        assert store.read_status().current_video_id is None

    def test_status_write_keeps_loop_flag(self, store: Store):
        store.set_loop(True)
        store.write_status("offline", None, "00:00:00")
        assert store.read_status().loop_playlist is True
