"""Tests for the encoder process registry."""

import asyncio
import logging

import pytest

from process_registry import (
    DuplicateProcessError,
    ExitStatus,
    ProcessHandle,
    ProcessRegistry,
    SpawnError,
    UnavailableHandle,
)
from testing import FakeSpawner, settle


class ExitRecorder:
    def __init__(self):
        self.calls: list[tuple[str, object, ExitStatus]] = []

    async def __call__(self, key, handle, status):
        self.calls.append((key, handle, status))


# =============================================================================
# ExitStatus Tests
# =============================================================================


class TestExitStatus:
    def test_normal_exit(self):
        status = ExitStatus.from_returncode(0)
        assert status.exit_code == 0
        assert status.signal is None
        assert status.clean

    def test_error_exit(self):
        status = ExitStatus.from_returncode(1)
        assert status.exit_code == 1
        assert not status.clean

    def test_signal_exit(self):
        status = ExitStatus.from_returncode(-15)
        assert status.exit_code is None
        assert status.signal == 15
        assert not status.clean
        assert str(status) == "signal 15"


# =============================================================================
# Spawn Tests
# =============================================================================


class TestSpawn:
    def test_registers_handle(self):
        async def run():
            spawner = FakeSpawner()
            registry = ProcessRegistry(spawner=spawner)
            handle = await registry.spawn("main", ["ffmpeg", "-re", "-i", "a.mp4"])
            assert isinstance(handle, ProcessHandle)
            assert registry.get("main") is handle
            assert "main" in registry
            assert len(registry) == 1
            assert spawner.calls == [("ffmpeg", "-re", "-i", "a.mp4")]
            assert handle.pid == spawner.last.pid
            spawner.last.exit(0)
            await handle.wait()

        asyncio.run(run())

    def test_refuses_second_handle_for_key(self):
        async def run():
            spawner = FakeSpawner()
            registry = ProcessRegistry(spawner=spawner)
            await registry.spawn("main", ["ffmpeg"])
            with pytest.raises(DuplicateProcessError):
                await registry.spawn("main", ["ffmpeg"])
            assert len(spawner.calls) == 1
            await registry.terminate_all(grace_sec=0.1)

        asyncio.run(run())

    def test_distinct_keys_independent(self):
        async def run():
            registry = ProcessRegistry(spawner=FakeSpawner())
            await registry.spawn("a", ["ffmpeg"])
            await registry.spawn("b", ["ffmpeg"])
            assert sorted(registry.keys()) == ["a", "b"]
            await registry.terminate_all(grace_sec=0.1)
            assert len(registry) == 0

        asyncio.run(run())

    def test_missing_executable(self):
        async def run():
            spawner = FakeSpawner()
            spawner.error = FileNotFoundError("No such file: ffmpeg")
            registry = ProcessRegistry(spawner=spawner)
            with pytest.raises(SpawnError, match="Failed to start ffmpeg"):
                await registry.spawn("main", ["ffmpeg"])
            assert "main" not in registry

        asyncio.run(run())

    def test_unavailable_facility(self):
        async def run():
            spawner = FakeSpawner()
            spawner.error = NotImplementedError()
            recorder = ExitRecorder()
            registry = ProcessRegistry(on_exit=recorder, spawner=spawner)
            handle = await registry.spawn("main", ["ffmpeg"])
            assert isinstance(handle, UnavailableHandle)
            assert not handle.emits_exit_events
            assert handle.pid is None
            # Counts toward one-per-key
            with pytest.raises(DuplicateProcessError):
                await registry.spawn("main", ["ffmpeg"])
            # Never exits on its own
            await asyncio.sleep(0.01)
            assert recorder.calls == []
            assert handle.is_running

        asyncio.run(run())


# =============================================================================
# Exit Callback Tests
# =============================================================================


class TestExitCallback:
    def test_natural_exit_reported_once(self):
        async def run():
            spawner = FakeSpawner()
            recorder = ExitRecorder()
            registry = ProcessRegistry(on_exit=recorder, spawner=spawner)
            handle = await registry.spawn("main", ["ffmpeg"])
            spawner.last.exit(1)
            await settle(lambda: len(recorder.calls) == 1)
            key, reported, status = recorder.calls[0]
            assert key == "main"
            assert reported is handle
            assert status == ExitStatus(exit_code=1)
            assert "main" not in registry
            # A late terminate doesn't report again
            await registry.terminate_handle(handle, grace_sec=0.1)
            await asyncio.sleep(0.01)
            assert len(recorder.calls) == 1

        asyncio.run(run())

    def test_terminate_reported_with_signal(self):
        async def run():
            spawner = FakeSpawner()
            recorder = ExitRecorder()
            registry = ProcessRegistry(on_exit=recorder, spawner=spawner)
            await registry.spawn("main", ["ffmpeg"])
            status = await registry.terminate("main", grace_sec=1.0)
            assert status == ExitStatus(exit_code=None, signal=15)
            assert spawner.last.terminated
            assert not spawner.last.killed
            await settle(lambda: len(recorder.calls) == 1)

        asyncio.run(run())

    def test_output_drained_before_exit(self, caplog):
        async def run():
            spawner = FakeSpawner(
                stderr_lines=[b"Stream mapping:\n", b"frame=  100 fps=30\n"],
            )
            recorder = ExitRecorder()
            registry = ProcessRegistry(on_exit=recorder, spawner=spawner)
            await registry.spawn("main", ["ffmpeg"])
            spawner.last.exit(0)
            await settle(lambda: len(recorder.calls) == 1)

        with caplog.at_level(logging.DEBUG, logger="process_registry"):
            asyncio.run(run())
        messages = [r.getMessage() for r in caplog.records]
        assert "ffmpeg:main connected to ingest server" in messages
        assert any("frame=  100" in m for m in messages)
        drained = max(i for i, m in enumerate(messages) if "frame=" in m)
        exited = next(i for i, m in enumerate(messages) if "exited with" in m)
        assert drained < exited

    def test_callback_failure_logged(self, caplog):
        async def failing(key, handle, status):
            raise RuntimeError("boom")

        async def run():
            spawner = FakeSpawner()
            registry = ProcessRegistry(on_exit=failing, spawner=spawner)
            await registry.spawn("main", ["ffmpeg"])
            spawner.last.exit(0)
            await settle(lambda: "main" not in registry)
            await asyncio.sleep(0.01)

        with caplog.at_level(logging.ERROR, logger="process_registry"):
            asyncio.run(run())
        assert any("Exit handler failed" in r.getMessage() for r in caplog.records)


# =============================================================================
# Termination Tests
# =============================================================================


class TestTerminate:
    def test_unknown_key(self):
        async def run():
            registry = ProcessRegistry(spawner=FakeSpawner())
            assert await registry.terminate("nope") is None

        asyncio.run(run())

    def test_force_kill_after_grace(self):
        async def run():
            spawner = FakeSpawner(ignore_terminate=True)
            registry = ProcessRegistry(spawner=spawner)
            await registry.spawn("main", ["ffmpeg"])
            status = await registry.terminate("main", grace_sec=0.05)
            assert spawner.last.terminated
            assert spawner.last.killed
            assert status.signal == 9
            assert "main" not in registry

        asyncio.run(run())

    def test_unavailable_handle_terminate(self):
        async def run():
            spawner = FakeSpawner()
            spawner.error = NotImplementedError()
            recorder = ExitRecorder()
            registry = ProcessRegistry(on_exit=recorder, spawner=spawner)
            handle = await registry.spawn("main", ["ffmpeg"])
            status = await registry.terminate("main")
            assert status.signal == 15
            assert not handle.is_running
            assert "main" not in registry
            await settle(lambda: len(recorder.calls) == 1)

        asyncio.run(run())


if __name__ == "__main__":
    from testing import run_tests

    run_tests(__file__)
