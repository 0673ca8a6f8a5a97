"""Encoder process registry: spawn, monitor and terminate ffmpeg by session key."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import asyncio
import logging
import signal
import time


log = logging.getLogger(__name__)

_DEFAULT_GRACE_SEC = 5.0
_SIGTERM = int(signal.SIGTERM)


class SpawnError(Exception):
    """The executable could not be started."""


class DuplicateProcessError(RuntimeError):
    """A process is already registered under this session key."""


@dataclass(slots=True, frozen=True)
class ExitStatus:
    exit_code: int | None
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int | None) -> ExitStatus:
        # asyncio reports death-by-signal as a negative return code
        if returncode is not None and returncode < 0:
            return cls(exit_code=None, signal=-returncode)
        return cls(exit_code=returncode)

    @property
    def clean(self) -> bool:
        return self.exit_code == 0 and self.signal is None

    def __str__(self) -> str:
        if self.signal is not None:
            return f"signal {self.signal}"
        return f"code {self.exit_code}"


class _Handle:
    """State shared by real and unavailable handles."""

    emits_exit_events = True

    def __init__(self, key: str) -> None:
        self.key = key
        self.started = time.time()
        self.exit_status: ExitStatus | None = None
        self._exited = asyncio.Event()
        self._exit_reported = False

    @property
    def pid(self) -> int | None:
        return None

    @property
    def is_running(self) -> bool:
        return self.exit_status is None

    async def wait(self) -> ExitStatus:
        await self._exited.wait()
        assert self.exit_status is not None
        return self.exit_status

    def _mark_exited(self, status: ExitStatus) -> bool:
        """Record the exit. Returns False if it was already recorded."""
        if self._exit_reported:
            return False
        self._exit_reported = True
        self.exit_status = status
        self._exited.set()
        return True


class ProcessHandle(_Handle):
    """A real encoder process."""

    def __init__(self, key: str, process: Any) -> None:
        super().__init__(key)
        self.process = process

    @property
    def pid(self) -> int | None:
        return self.process.pid


class UnavailableHandle(_Handle):
    """Stand-in when the OS process facility is missing.

    Counts toward the one-process-per-key limit like a real handle but never
    produces output and never exits on its own, so loop chaining stalls.
    """

    emits_exit_events = False


Handle = ProcessHandle | UnavailableHandle
ExitCallback = Callable[[str, Handle, ExitStatus], Awaitable[None]]
Spawner = Callable[..., Awaitable[Any]]


def _is_fatal_line(text: str) -> bool:
    lowered = text.lower()
    return "fatal" in lowered or "aborting" in lowered or "error" in lowered


class ProcessRegistry:
    """Owns the running encoder processes, at most one per session key."""

    def __init__(
        self,
        on_exit: ExitCallback | None = None,
        spawner: Spawner | None = None,
    ) -> None:
        self._handles: dict[str, Handle] = {}
        self._on_exit = on_exit
        self._spawner: Spawner = spawner or asyncio.create_subprocess_exec
        self._background_tasks: set[asyncio.Task[None]] = set()

    def set_exit_callback(self, on_exit: ExitCallback) -> None:
        self._on_exit = on_exit

    def get(self, key: str) -> Handle | None:
        return self._handles.get(key)

    def keys(self) -> list[str]:
        return list(self._handles)

    def __contains__(self, key: object) -> bool:
        return key in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def _spawn_background_task(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    # =======================================================================
    # Spawn
    # =======================================================================

    async def spawn(self, key: str, cmd: list[str]) -> Handle:
        """Start cmd and register it under key.

        Raises DuplicateProcessError if key already has a process (stop it
        first) and SpawnError if the executable can't be started.
        """
        if key in self._handles:
            raise DuplicateProcessError(f"Process already registered for {key}")
        try:
            process = await self._spawner(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except NotImplementedError:
            log.warning(
                "Process spawning unavailable, tracking %s without a process "
                "(no output, no exit events)",
                key,
            )
            handle: Handle = UnavailableHandle(key)
            self._handles[key] = handle
            return handle
        except OSError as e:
            raise SpawnError(f"Failed to start {cmd[0]}: {e}") from e

        handle = ProcessHandle(key, process)
        self._handles[key] = handle
        self._spawn_background_task(self._monitor(handle))
        log.info("Started ffmpeg pid=%s for %s", process.pid, key)
        return handle

    # =======================================================================
    # Monitoring
    # =======================================================================

    async def _drain(self, stream: Any, key: str, name: str) -> None:
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace").rstrip()
            if not text:
                continue
            if "Stream mapping:" in text or "Press [q] to stop" in text:
                log.info("ffmpeg:%s connected to ingest server", key)
            level = logging.WARNING if _is_fatal_line(text) else logging.DEBUG
            log.log(level, "ffmpeg:%s %s: %s", key, name, text)

    async def _monitor(self, handle: ProcessHandle) -> None:
        process = handle.process
        try:
            await asyncio.gather(
                self._drain(process.stdout, handle.key, "stdout"),
                self._drain(process.stderr, handle.key, "stderr"),
            )
        except Exception:
            log.exception("ffmpeg:%s output reader failed", handle.key)
        returncode = await process.wait()
        status = ExitStatus.from_returncode(returncode)
        log.info("ffmpeg:%s pid=%s exited with %s", handle.key, handle.pid, status)
        await self._report_exit(handle, status)

    def _record_exit(self, handle: Handle, status: ExitStatus) -> bool:
        """Unregister handle and record its exit. False if already recorded."""
        if self._handles.get(handle.key) is handle:
            del self._handles[handle.key]
        return handle._mark_exited(status)

    async def _notify_exit(self, handle: Handle, status: ExitStatus) -> None:
        if self._on_exit is None:
            return
        try:
            await self._on_exit(handle.key, handle, status)
        except Exception:
            log.exception("Exit handler failed for %s", handle.key)

    async def _report_exit(self, handle: Handle, status: ExitStatus) -> None:
        if self._record_exit(handle, status):
            await self._notify_exit(handle, status)

    # =======================================================================
    # Termination
    # =======================================================================

    async def terminate_handle(self, handle: Handle, grace_sec: float = _DEFAULT_GRACE_SEC) -> ExitStatus:
        """Stop a process gracefully (SIGTERM), force kill after grace_sec."""
        if isinstance(handle, UnavailableHandle):
            status = ExitStatus(None, _SIGTERM)
            # Callback runs from a task: the caller may hold the session lock.
            if self._record_exit(handle, status):
                self._spawn_background_task(self._notify_exit(handle, status))
            return await handle.wait()

        process = handle.process
        if process.returncode is None:
            with suppress(ProcessLookupError):
                process.terminate()
            try:
                return await asyncio.wait_for(handle.wait(), timeout=grace_sec)
            except TimeoutError:
                log.warning(
                    "ffmpeg:%s ignored SIGTERM for %.1fs, killing pid=%s",
                    handle.key,
                    grace_sec,
                    handle.pid,
                )
                with suppress(ProcessLookupError):
                    process.kill()
        return await handle.wait()

    async def terminate(self, key: str, grace_sec: float = _DEFAULT_GRACE_SEC) -> ExitStatus | None:
        """Terminate the process registered under key, if any."""
        handle = self._handles.get(key)
        if handle is None:
            return None
        return await self.terminate_handle(handle, grace_sec)

    async def terminate_all(self, grace_sec: float = _DEFAULT_GRACE_SEC) -> None:
        handles = list(self._handles.values())
        if handles:
            log.info("Terminating %d encoder process(es)", len(handles))
        await asyncio.gather(*(self.terminate_handle(h, grace_sec) for h in handles))
