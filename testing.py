"""Test utilities: pytest runner and fake encoder processes."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import asyncio
import sys
import warnings


# Suppress unawaited coroutine warnings from AsyncMock in tests.
warnings.filterwarnings("ignore", message="coroutine.*was never awaited")


def run_tests(test_file: str) -> None:
    """Run pytest on a test file with standard flags.

    Usage:
        if __name__ == "__main__":
            from testing import run_tests
            run_tests(__file__)
    """
    import pytest

    sys.exit(
        pytest.main(
            [
                test_file,
                "-v",
                "-s",
                "-W",
                "ignore::pytest.PytestAssertRewriteWarning",
                *sys.argv[1:],
            ]
        )
    )


class FakeStream:
    """Line reader that yields canned lines, then EOF once the process exits."""

    def __init__(self, proc: FakeProcess, lines: list[bytes]):
        self._proc = proc
        self._lines = list(lines)

    async def readline(self) -> bytes:
        if self._lines:
            return self._lines.pop(0)
        await self._proc._exited.wait()
        return b""


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    _next_pid = 1000

    def __init__(
        self,
        stdout_lines: list[bytes] | None = None,
        stderr_lines: list[bytes] | None = None,
        ignore_terminate: bool = False,
    ):
        FakeProcess._next_pid += 1
        self.pid = FakeProcess._next_pid
        self.returncode: int | None = None
        self.ignore_terminate = ignore_terminate
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()
        self.stdout = FakeStream(self, stdout_lines or [])
        self.stderr = FakeStream(self, stderr_lines or [])

    def exit(self, code: int = 0) -> None:
        """Simulate the process exiting on its own."""
        if self.returncode is None:
            self.returncode = code
            self._exited.set()

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode


class FakeSpawner:
    """Records spawn calls and hands out FakeProcesses.

    Set `error` to an exception instance to make the next spawns raise it.
    """

    def __init__(self, **process_kwargs: Any):
        self.calls: list[tuple[str, ...]] = []
        self.processes: list[FakeProcess] = []
        self.error: BaseException | None = None
        self._process_kwargs = process_kwargs

    async def __call__(self, *cmd: str, **kwargs: Any) -> FakeProcess:
        self.calls.append(tuple(cmd))
        if self.error is not None:
            raise self.error
        proc = FakeProcess(**self._process_kwargs)
        self.processes.append(proc)
        return proc

    @property
    def last(self) -> FakeProcess:
        return self.processes[-1]


async def settle(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Yield to the event loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached before timeout")
        await asyncio.sleep(0.001)
