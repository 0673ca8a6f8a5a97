"""Stream session lifecycle: start/stop, 24x7 playlist looping and uptime."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Literal, Protocol

import asyncio
import logging
import time

from process_registry import (
    DuplicateProcessError,
    ExitStatus,
    Handle,
    ProcessRegistry,
    SpawnError,
)
from store import StatusRow, VideoAsset
from stream_command import (
    EncoderProbe,
    StreamTarget,
    build_stream_cmd,
    get_settings,
    probe_encoder,
    resolve_endpoint,
    target_problem,
)


log = logging.getLogger(__name__)

DEFAULT_SESSION_KEY = "main"

# Timing defaults (seconds), overridable in settings
_STOP_GRACE_SEC = 5.0
_UPTIME_INTERVAL_SEC = 1.0

SessionState = Literal["idle", "starting", "live", "stopping", "error"]

# Status row names differ from session states only for idle
_STATUS_NAMES: dict[str, str] = {"idle": "offline"}


# ===========================================================================
# Errors
# ===========================================================================


class StreamError(Exception):
    @property
    def kind(self) -> str:
        return type(self).__name__


class StartError(StreamError):
    """start() failed. No process is left registered."""


class AssetNotFound(StartError):
    pass


class AssetFileMissing(StartError):
    pass


class TargetInvalid(StartError):
    pass


class SpawnFailure(StartError):
    pass


class ProcessCrash(StreamError):
    """Encoder exited abnormally while live (recorded, not raised)."""


class StreamStore(Protocol):
    """Data access the orchestrator needs."""

    def get_asset(self, asset_id: int | None) -> VideoAsset | None: ...

    def list_assets(self) -> list[VideoAsset]: ...

    def get_active_target(self) -> StreamTarget | None: ...

    def read_status(self) -> StatusRow: ...

    def write_status(
        self,
        status: str,
        current_video_id: int | None,
        uptime: str,
        started_at: float | None = None,
    ) -> None: ...

    def write_uptime(self, uptime: str) -> None: ...

    def set_current(self, asset_id: int | None) -> None: ...

    def set_loop(self, enabled: bool) -> None: ...


# ===========================================================================
# Uptime
# ===========================================================================


def format_uptime(seconds: float) -> str:
    """Format elapsed seconds as zero-padded HH:MM:SS."""
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


class UptimeTracker:
    """Periodically publishes uptime while a session is live."""

    def __init__(self, publish: Any, interval_sec: float = _UPTIME_INTERVAL_SEC) -> None:
        self._publish = publish
        self._interval = interval_sec
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, started_at: float) -> None:
        self.stop()
        self._task = asyncio.create_task(self._run(started_at))

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self, started_at: float) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self._publish(format_uptime(time.time() - started_at))
            except Exception as e:
                log.warning("Failed to publish uptime: %s", e)


# ===========================================================================
# Playlist
# ===========================================================================


class PlaylistCursor:
    """Ordered asset ids and "what plays next" relative to the current one."""

    def __init__(self, asset_ids: list[int] | None = None) -> None:
        self.asset_ids: list[int] = list(asset_ids or [])
        self.index = -1

    def refresh(self, store: StreamStore) -> None:
        self.asset_ids = [a.id for a in store.list_assets()]
        log.debug("Loaded playlist with %d videos", len(self.asset_ids))

    def next_after(self, current_id: int | None) -> int | None:
        """Next id after current_id, wrapping. Unknown current starts at the top."""
        if not self.asset_ids:
            return None
        found = self.asset_ids.index(current_id) if current_id in self.asset_ids else -1
        self.index = (found + 1) % len(self.asset_ids)
        return self.asset_ids[self.index]


# ===========================================================================
# Sessions
# ===========================================================================


@dataclass(slots=True)
class Session:
    key: str
    state: SessionState = "idle"
    started_at: float | None = None
    asset_id: int | None = None
    target: StreamTarget | None = None
    handle: Handle | None = None
    stop_requested: bool = False
    error: str | None = None

    @property
    def uptime(self) -> str:
        if self.state != "live" or self.started_at is None:
            return "00:00:00"
        return format_uptime(time.time() - self.started_at)

    def snapshot(self) -> Session:
        return replace(self)


def _redact(cmd: list[str], target: StreamTarget) -> str:
    """Command line for logging, stream key masked."""
    if not target.stream_key:
        return " ".join(cmd)
    return " ".join(arg.replace(target.stream_key, "****") for arg in cmd)


class StreamOrchestrator:
    """Runs one encoder per session key and chains the playlist when looping.

    start, stop and exit handling for a key are serialized by a per-key lock.
    """

    def __init__(
        self,
        store: StreamStore,
        registry: ProcessRegistry | None = None,
        default_key: str = DEFAULT_SESSION_KEY,
    ) -> None:
        self._store = store
        self._registry = registry if registry is not None else ProcessRegistry()
        self._registry.set_exit_callback(self.on_process_exit)
        self.default_key = default_key
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._trackers: dict[str, UptimeTracker] = {}
        self._cursor = PlaylistCursor()
        self._loop_enabled = store.read_status().loop_playlist
        self._background_tasks: set[asyncio.Task[None]] = set()

    @property
    def store(self) -> StreamStore:
        return self._store

    @property
    def registry(self) -> ProcessRegistry:
        return self._registry

    @property
    def cursor(self) -> PlaylistCursor:
        return self._cursor

    @property
    def loop_enabled(self) -> bool:
        return self._loop_enabled

    def get_session(self, key: str | None = None) -> Session | None:
        session = self._sessions.get(key or self.default_key)
        return session.snapshot() if session else None

    def _lock(self, key: str) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())

    def _session(self, key: str) -> Session:
        return self._sessions.setdefault(key, Session(key))

    def _spawn_background_task(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    def _stop_grace(self) -> float:
        return float(get_settings().get("stop_grace_secs", _STOP_GRACE_SEC))

    def _owns_status_row(self, key: str) -> bool:
        # The status row has a single slot; it mirrors the default session only
        return key == self.default_key

    def _write_status(self, session: Session) -> None:
        if not self._owns_status_row(session.key):
            return
        self._store.write_status(
            _STATUS_NAMES.get(session.state, session.state),
            session.asset_id,
            session.uptime,
            session.started_at,
        )

    # =======================================================================
    # Uptime
    # =======================================================================

    def _start_uptime(self, session: Session) -> None:
        assert session.started_at is not None
        if not self._owns_status_row(session.key):
            return
        interval = float(get_settings().get("uptime_interval_secs", _UPTIME_INTERVAL_SEC))
        tracker = self._trackers.get(session.key)
        if tracker is None:
            tracker = UptimeTracker(self._store.write_uptime, interval)
            self._trackers[session.key] = tracker
        tracker.start(session.started_at)

    def _stop_uptime(self, key: str) -> None:
        tracker = self._trackers.get(key)
        if tracker is not None:
            tracker.stop()

    # =======================================================================
    # Start
    # =======================================================================

    async def start(
        self,
        asset_id: int | None = None,
        target: StreamTarget | None = None,
        key: str | None = None,
    ) -> Session:
        """Start streaming asset_id to target, replacing any running encoder.

        asset_id defaults to the current video in the status row and target
        to the active stream configuration. Raises a StartError subclass.
        """
        key = key or self.default_key
        async with self._lock(key):
            return await self._start_locked(key, asset_id, target)

    def _validate(
        self,
        asset_id: int | None,
        target: StreamTarget | None,
    ) -> tuple[VideoAsset, StreamTarget]:
        if asset_id is None:
            asset_id = self._store.read_status().current_video_id
            if asset_id is None:
                raise AssetNotFound("No video selected for streaming")
        asset = self._store.get_asset(asset_id)
        if asset is None:
            raise AssetNotFound(f"Video {asset_id} not found")
        if not asset.path.is_file():
            raise AssetFileMissing(f"Video file not found on disk: {asset.path}")
        if target is None:
            target = self._store.get_active_target()
            if target is None:
                raise TargetInvalid("Stream configuration not found")
        problem = target_problem(target)
        if problem:
            raise TargetInvalid(problem)
        return asset, target

    async def _start_locked(
        self,
        key: str,
        asset_id: int | None,
        target: StreamTarget | None,
    ) -> Session:
        session = self._session(key)
        try:
            asset, target = self._validate(asset_id, target)
        except StartError as e:
            log.warning("Not starting stream %s: %s", key, e)
            if session.handle is None and session.state != "error":
                session.state = "idle"
            raise

        # One encoder per key: replace whatever is running
        if session.handle is not None or key in self._registry:
            log.info("Replacing running encoder for %s", key)
            await self._terminate_locked(session)

        session.state = "starting"
        session.asset_id = asset.id
        session.target = target
        session.started_at = None
        session.error = None
        self._write_status(session)

        cmd = build_stream_cmd(str(asset.path), resolve_endpoint(target), target)
        log.info(
            "Starting stream %s: video %d (%s) -> %s: %s",
            key,
            asset.id,
            asset.title,
            target.platform,
            _redact(cmd, target),
        )
        try:
            handle = await self._registry.spawn(key, cmd)
        except (SpawnError, DuplicateProcessError) as e:
            session.state = "error"
            session.error = SpawnFailure.__name__
            self._write_status(session)
            log.error("Failed to start encoder for %s: %s", key, e)
            raise SpawnFailure(str(e)) from e

        session.handle = handle
        session.state = "live"
        session.started_at = time.time()
        if not handle.emits_exit_events and self._loop_enabled:
            log.warning(
                "Encoder for %s can't report exits; 24x7 loop will not advance",
                key,
            )
        self._start_uptime(session)
        self._write_status(session)
        self._spawn_background_task(self._refresh_playlist())
        return session.snapshot()

    async def _refresh_playlist(self) -> None:
        try:
            self._cursor.refresh(self._store)
        except Exception:
            log.exception("Error loading playlist")

    # =======================================================================
    # Stop
    # =======================================================================

    async def _terminate_locked(self, session: Session) -> None:
        """Terminate the session's encoder and wait for it to exit.

        Detaches the handle once it has exited, so its queued exit event is
        ignored as stale by on_process_exit.
        """
        self._stop_uptime(session.key)
        handle = session.handle
        if handle is None and session.key not in self._registry:
            return
        session.stop_requested = True
        session.state = "stopping"
        grace = self._stop_grace()
        if handle is not None:
            await self._registry.terminate_handle(handle, grace)
        else:
            await self._registry.terminate(session.key, grace)
        session.handle = None
        session.stop_requested = False

    async def stop(self, key: str | None = None) -> bool:
        """Stop one session, or all sessions when key is None. Idempotent."""
        keys = [key] if key else sorted(set(self._sessions) | set(self._registry.keys()))
        for k in keys:
            async with self._lock(k):
                await self._stop_locked(k)
        return True

    async def _stop_locked(self, key: str) -> None:
        session = self._sessions.get(key)
        if session is None and key not in self._registry:
            return
        session = self._session(key)
        running = session.handle is not None and session.handle.is_running
        if session.state == "idle" and not running and key not in self._registry:
            return
        await self._terminate_locked(session)
        session.state = "idle"
        session.started_at = None
        session.asset_id = None
        session.error = None
        self._write_status(session)
        log.info("Stopped stream %s", key)

    # =======================================================================
    # Exit Handling
    # =======================================================================

    async def on_process_exit(self, key: str, handle: Handle, status: ExitStatus) -> None:
        """Called by the registry once per encoder exit."""
        async with self._lock(key):
            session = self._sessions.get(key)
            if session is None or session.handle is not handle:
                log.debug("Ignoring exit of stopped or replaced encoder for %s (%s)", key, status)
                return
            session.handle = None
            self._stop_uptime(key)

            if not status.clean:
                log.warning("Encoder for %s exited with %s", key, status)

            if self._loop_enabled:
                await self._advance_locked(session)
                return

            session.started_at = None
            if status.clean:
                log.info("Stream %s finished", key)
                session.state = "idle"
                session.asset_id = None
            else:
                session.state = "error"
                session.error = ProcessCrash.__name__
            self._write_status(session)

    async def _advance_locked(self, session: Session) -> None:
        """Start the playlist entry after the current one."""
        try:
            self._cursor.refresh(self._store)
            current = None
            if self._owns_status_row(session.key):
                current = self._store.read_status().current_video_id
        except Exception:
            log.exception("Error loading playlist for %s", session.key)
            session.state = "error"
            session.started_at = None
            return
        if current is None:
            current = session.asset_id

        next_id = self._cursor.next_after(current)
        if next_id is None:
            log.info("Playlist is empty, loop for %s stops", session.key)
            session.state = "idle"
            session.started_at = None
            session.asset_id = None
            self._write_status(session)
            return

        log.info("Playing next video %d on %s", next_id, session.key)
        if self._owns_status_row(session.key):
            self._store.set_current(next_id)
        try:
            await self._start_locked(session.key, next_id, session.target)
        except StartError as e:
            log.error("Loop could not start video %d on %s: %s", next_id, session.key, e)
            session.state = "error"
            session.error = e.kind
            session.started_at = None
            session.asset_id = next_id
            self._write_status(session)

    # =======================================================================
    # Loop / Current / Status
    # =======================================================================

    def set_loop_enabled(self, enabled: bool) -> None:
        """Takes effect at the next encoder exit; never starts or stops anything."""
        self._loop_enabled = enabled
        self._store.set_loop(enabled)
        log.info("24x7 loop %s", "enabled" if enabled else "disabled")

    def enable_loop(self) -> None:
        self.set_loop_enabled(True)

    def disable_loop(self) -> None:
        self.set_loop_enabled(False)

    def set_current(self, asset_id: int) -> VideoAsset:
        asset = self._store.get_asset(asset_id)
        if asset is None:
            raise AssetNotFound(f"Video {asset_id} not found")
        self._store.set_current(asset_id)
        return asset

    def query_status(self, key: str | None = None) -> dict[str, Any]:
        key = key or self.default_key
        session = self._sessions.get(key) or Session(key)
        row = self._store.read_status()
        if not self._owns_status_row(key):
            row = StatusRow(
                status=_STATUS_NAMES.get(session.state, session.state),
                current_video_id=session.asset_id,
                viewer_count=row.viewer_count,
            )
        handle = session.handle
        return {
            "state": session.state,
            "status": row.status,
            "current_video_id": row.current_video_id,
            "loop_enabled": self._loop_enabled,
            "uptime": session.uptime,
            "started_at": session.started_at,
            "pid": handle.pid if handle else None,
            "exit_events": handle.emits_exit_events if handle else None,
            "error": session.error,
            "viewer_count": row.viewer_count,
        }

    async def probe_encoder_available(self, timeout_sec: float | None = None) -> EncoderProbe:
        return await probe_encoder(timeout_sec)

    async def shutdown(self) -> None:
        """Stop every session (server shutdown)."""
        await self.stop()
        for tracker in self._trackers.values():
            tracker.stop()
