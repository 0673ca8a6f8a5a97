"""SQLite storage for videos, the active stream configuration and stream status."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import logging
import sqlite3
import threading
import time

from stream_command import ORIGINAL_RESOLUTION, StreamTarget


log = logging.getLogger(__name__)


# =============================================================================
# Data Types
# =============================================================================


@dataclass(slots=True)
class VideoAsset:
    id: int
    title: str
    filename: str
    file_size: int
    duration: str  # "MM:SS"
    playlist_order: int
    path: Path


@dataclass(slots=True)
class StatusRow:
    status: str = "offline"
    current_video_id: int | None = None
    uptime: str = "00:00:00"
    started_at: float | None = None
    loop_playlist: bool = False
    viewer_count: int = 0


# =============================================================================
# SQLite Storage
# =============================================================================

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS videos (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        title TEXT NOT NULL,
        filename TEXT NOT NULL,
        file_size INTEGER NOT NULL DEFAULT 0,
        duration TEXT NOT NULL DEFAULT '00:00',
        playlist_order INTEGER NOT NULL,
        uploaded_at REAL
    );
    CREATE INDEX IF NOT EXISTS idx_videos_order ON videos(playlist_order, id);
    CREATE TABLE IF NOT EXISTS stream_configs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        platform TEXT NOT NULL,
        stream_key TEXT NOT NULL DEFAULT '',
        rtmp_url TEXT,
        resolution TEXT NOT NULL,
        framerate INTEGER NOT NULL,
        bitrate INTEGER NOT NULL,
        audio_quality INTEGER NOT NULL DEFAULT 128,
        is_active INTEGER NOT NULL DEFAULT 0
    );
    CREATE TABLE IF NOT EXISTS stream_status (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        status TEXT NOT NULL DEFAULT 'offline',
        viewer_count INTEGER NOT NULL DEFAULT 0,
        uptime TEXT NOT NULL DEFAULT '00:00:00',
        current_video_id INTEGER,
        started_at REAL,
        loop_playlist INTEGER NOT NULL DEFAULT 0
    );
    INSERT OR IGNORE INTO stream_status (id) VALUES (1);
"""


class Store:
    """Data access for the orchestrator and the control API.

    Connections are thread-local; the database file is shared.
    """

    def __init__(self, db_path: Path | str, uploads_dir: Path | str) -> None:
        self.db_path = Path(db_path)
        self.uploads_dir = Path(uploads_dir)
        self._local = threading.local()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = self._get_conn()
        conn.executescript(_SCHEMA)
        conn.commit()

    def _get_conn(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
        return conn

    def close(self) -> None:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # =========================================================================
    # Videos
    # =========================================================================

    def _row_to_asset(self, row: sqlite3.Row) -> VideoAsset:
        return VideoAsset(
            id=row["id"],
            title=row["title"],
            filename=row["filename"],
            file_size=row["file_size"],
            duration=row["duration"],
            playlist_order=row["playlist_order"],
            path=self.uploads_dir / row["filename"],
        )

    def add_video(
        self,
        title: str,
        filename: str,
        file_size: int = 0,
        duration: str = "00:00",
        playlist_order: int | None = None,
    ) -> VideoAsset:
        """Insert a video, appending to the end of the playlist by default."""
        conn = self._get_conn()
        if playlist_order is None:
            row = conn.execute("SELECT COALESCE(MAX(playlist_order), 0) + 1 FROM videos").fetchone()
            playlist_order = row[0]
        cur = conn.execute(
            "INSERT INTO videos (title, filename, file_size, duration, playlist_order, uploaded_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (title or "Untitled Video", filename, file_size, duration, playlist_order, time.time()),
        )
        conn.commit()
        asset = self.get_asset(cur.lastrowid)
        assert asset is not None
        return asset

    def get_asset(self, asset_id: int | None) -> VideoAsset | None:
        if asset_id is None:
            return None
        row = self._get_conn().execute("SELECT * FROM videos WHERE id = ?", (asset_id,)).fetchone()
        return self._row_to_asset(row) if row else None

    def list_assets(self) -> list[VideoAsset]:
        """All videos in playlist order (ties broken by id)."""
        rows = self._get_conn().execute("SELECT * FROM videos ORDER BY playlist_order, id").fetchall()
        return [self._row_to_asset(r) for r in rows]

    def rename_video(self, asset_id: int, title: str) -> VideoAsset | None:
        conn = self._get_conn()
        cur = conn.execute("UPDATE videos SET title = ? WHERE id = ?", (title, asset_id))
        conn.commit()
        return self.get_asset(asset_id) if cur.rowcount else None

    def delete_video(self, asset_id: int, remove_file: bool = True) -> bool:
        """Delete a video row (and its file). Returns False if not found."""
        asset = self.get_asset(asset_id)
        if asset is None:
            return False
        conn = self._get_conn()
        conn.execute("DELETE FROM videos WHERE id = ?", (asset_id,))
        conn.commit()
        if remove_file:
            asset.path.unlink(missing_ok=True)
        return True

    def reorder(self, asset_ids: list[int]) -> None:
        """Assign playlist_order 1..n following asset_ids."""
        conn = self._get_conn()
        conn.executemany(
            "UPDATE videos SET playlist_order = ? WHERE id = ?",
            [(i + 1, asset_id) for i, asset_id in enumerate(asset_ids)],
        )
        conn.commit()

    # =========================================================================
    # Stream Config
    # =========================================================================

    def save_target(self, target: StreamTarget) -> None:
        """Store target as the only active configuration."""
        conn = self._get_conn()
        conn.execute("UPDATE stream_configs SET is_active = 0")
        conn.execute(
            "INSERT INTO stream_configs (platform, stream_key, rtmp_url, resolution, framerate, "
            "bitrate, audio_quality, is_active) VALUES (?, ?, ?, ?, ?, ?, ?, 1)",
            (
                target.platform,
                target.stream_key,
                target.rtmp_url,
                target.resolution or ORIGINAL_RESOLUTION,
                target.framerate,
                target.bitrate,
                target.audio_bitrate,
            ),
        )
        conn.commit()

    def get_active_target(self) -> StreamTarget | None:
        row = (
            self._get_conn()
            .execute("SELECT * FROM stream_configs WHERE is_active = 1 ORDER BY id DESC LIMIT 1")
            .fetchone()
        )
        if not row:
            return None
        return StreamTarget(
            platform=row["platform"],
            stream_key=row["stream_key"],
            rtmp_url=row["rtmp_url"],
            resolution=row["resolution"],
            framerate=row["framerate"],
            bitrate=row["bitrate"],
            audio_bitrate=row["audio_quality"],
        )

    # =========================================================================
    # Stream Status
    # =========================================================================

    def read_status(self) -> StatusRow:
        row = self._get_conn().execute("SELECT * FROM stream_status WHERE id = 1").fetchone()
        return StatusRow(
            status=row["status"],
            current_video_id=row["current_video_id"],
            uptime=row["uptime"],
            started_at=row["started_at"],
            loop_playlist=bool(row["loop_playlist"]),
            viewer_count=row["viewer_count"],
        )

    def write_status(
        self,
        status: str,
        current_video_id: int | None,
        uptime: str,
        started_at: float | None = None,
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            "UPDATE stream_status SET status = ?, current_video_id = ?, uptime = ?, started_at = ? "
            "WHERE id = 1",
            (status, current_video_id, uptime, started_at),
        )
        conn.commit()

    def write_uptime(self, uptime: str) -> None:
        conn = self._get_conn()
        conn.execute("UPDATE stream_status SET uptime = ? WHERE id = 1", (uptime,))
        conn.commit()

    def set_current(self, asset_id: int | None) -> None:
        conn = self._get_conn()
        conn.execute("UPDATE stream_status SET current_video_id = ? WHERE id = 1", (asset_id,))
        conn.commit()

    def set_loop(self, enabled: bool) -> None:
        conn = self._get_conn()
        conn.execute("UPDATE stream_status SET loop_playlist = ? WHERE id = 1", (int(enabled),))
        conn.commit()
