"""Shared fixtures: an in-memory stand-in for the PTY-backed shell."""

import asyncio
import itertools
import signal
import time

import pytest

from services.session_manager import SessionRegistry
from services.terminal_service import ExitStatus

_pids = itertools.count(10_000)


class FakeShellProcess:
    """Behaves like ShellProcess, but output and exit are driven by the test"""

    def __init__(self, argv, cwd, cols, rows):
        self.argv = list(argv)
        self.cwd = cwd
        self.cols = cols
        self.rows = rows
        self.pid = next(_pids)
        self.written = []
        self.kill_count = 0
        self.closed = False
        self._status = None
        self._ended = False
        self._output = asyncio.Queue()

    @property
    def alive(self):
        return self._status is None

    def emit(self, text):
        self._output.put_nowait(text)

    def finish(self, exit_code=0, sig=None):
        if self._ended:
            return
        self._ended = True
        if self._status is None:
            self._status = ExitStatus(exit_code=exit_code, signal=sig)
        self._output.put_nowait(None)

    def exit_holding_terminal(self, exit_code=0):
        """The shell is gone but a background job still has the terminal open"""
        if self._status is None:
            self._status = ExitStatus(exit_code=exit_code)

    async def read(self):
        return await self._output.get()

    async def wait(self):
        return self._status

    def write(self, data):
        self.written.append(data)

    def resize(self, cols, rows):
        self.cols, self.rows = cols, rows

    def get_size(self):
        return self.cols, self.rows

    def kill(self):
        self.kill_count += 1
        self.finish(128 + int(signal.SIGHUP), int(signal.SIGHUP))

    def close(self):
        self.closed = True


class FakeSpawner:
    def __init__(self):
        self.processes = []
        self.fail = None

    async def __call__(self, argv, cwd, cols, rows, kill_grace=5.0):
        await asyncio.sleep(0)  # yield like a real fork in an executor would
        if self.fail is not None:
            raise self.fail
        process = FakeShellProcess(argv, cwd, cols, rows)
        self.processes.append(process)
        return process


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def registry(spawner):
    return SessionRegistry(shell="/bin/sh", buffer_limit=1000, idle_timeout=60, spawner=spawner)


async def _settle(rounds: int = 10):
    """Let pump tasks run until they are idle"""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    return _settle


def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.01):
    """Poll from the test thread while the app's event loop runs elsewhere"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    return _wait_until
