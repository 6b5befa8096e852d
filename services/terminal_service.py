"""
Terminal service with PTY support
Owns one pseudo-terminal and the shell process attached to it
"""

import asyncio
import codecs
import functools
import logging
import os
import signal
from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from ptyprocess import PtyProcess, PtyProcessError

from core.exceptions import SpawnError

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 65536
REAP_POLL_INTERVAL = 0.05
# Output still in flight when the shell dies is read for this long
EXIT_DRAIN_SECONDS = 0.2


@dataclass(frozen=True)
class ExitStatus:
    """How the shell process ended"""

    exit_code: int
    signal: Optional[int] = None


def default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/bash"


class ShellProcess:
    """
    A shell running on a pseudo-terminal.

    Output is delivered through read(), which yields decoded chunks in the
    order the PTY produced them and returns None once at end of stream.
    Everything here runs on the event loop thread; the master fd is
    non-blocking and driven by loop readers/writers.
    """

    def __init__(self, proc: PtyProcess, loop: asyncio.AbstractEventLoop, kill_grace: float = 5.0):
        self._proc = proc
        self._loop = loop
        self._kill_grace = kill_grace
        self._fd = proc.fd
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._output: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
        self._pending = bytearray()
        self._writing = False
        self._reading = False
        self._eof = False
        self._closed = False
        self._kill_sent = False
        self._force_kill_handle: Optional[asyncio.TimerHandle] = None
        self._status: Optional[ExitStatus] = None

        os.set_blocking(self._fd, False)
        self._loop.add_reader(self._fd, self._on_readable)
        self._reading = True
        # Background jobs can keep the slave open after the shell is gone,
        # so exit is detected by reaping the child, not by EOF
        self._reaper = self._loop.create_task(self._reap())

    @classmethod
    async def spawn(
        cls,
        argv: Sequence[str],
        cwd: str,
        cols: int,
        rows: int,
        env: Optional[Dict[str, str]] = None,
        kill_grace: float = 5.0,
    ) -> "ShellProcess":
        """Start argv on a new PTY in cwd. Forking happens off the event loop."""
        if not os.path.isdir(cwd):
            raise SpawnError(f"Working directory does not exist: {cwd}")

        process_env = dict(os.environ if env is None else env)
        process_env["TERM"] = "xterm-256color"
        process_env["COLORTERM"] = "truecolor"

        loop = asyncio.get_running_loop()
        try:
            proc = await loop.run_in_executor(
                None,
                functools.partial(
                    PtyProcess.spawn,
                    list(argv),
                    cwd=cwd,
                    env=process_env,
                    dimensions=(rows, cols),
                ),
            )
        except Exception as e:
            # ptyprocess re-raises the child's exec/chdir failure in the parent
            raise SpawnError(f"Failed to start {argv[0]} in {cwd}: {e}") from e

        logger.info(f"Spawned {argv[0]} (pid {proc.pid}) in {cwd} at {cols}x{rows}")
        return cls(proc, loop, kill_grace=kill_grace)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def alive(self) -> bool:
        if self._status is not None:
            return False
        return self._proc.isalive()

    async def read(self) -> Optional[str]:
        """Next chunk of output, or None at end of stream"""
        return await self._output.get()

    def write(self, data) -> None:
        """Queue input for the shell (fire-and-forget, order preserved)"""
        if isinstance(data, str):
            data = data.encode("utf-8")
        if self._closed or not data:
            return
        self._pending.extend(data)
        if not self._writing:
            self._flush()

    def resize(self, cols: int, rows: int) -> None:
        """Resize terminal"""
        if self._closed:
            return
        self._proc.setwinsize(rows, cols)

    def get_size(self) -> Tuple[int, int]:
        """Terminal size as (cols, rows), as the kernel reports it"""
        rows, cols = self._proc.getwinsize()
        return cols, rows

    def kill(self) -> None:
        """Hang up the shell; SIGKILL follows if it outlives the grace period"""
        if self._kill_sent or not self.alive:
            return
        self._kill_sent = True
        self._signal(signal.SIGHUP)
        self._force_kill_handle = self._loop.call_later(self._kill_grace, self._force_kill)

    async def wait(self) -> ExitStatus:
        """Wait for the child to be reaped and report how it ended"""
        if self._status is not None:
            return self._status
        return await asyncio.shield(self._reaper)

    async def _reap(self) -> ExitStatus:
        # isalive() reaps with WNOHANG; polling keeps every waitpid on this thread
        try:
            while self._proc.isalive():
                await asyncio.sleep(REAP_POLL_INTERVAL)
        except PtyProcessError as e:
            logger.warning(f"Lost track of pid {self.pid}: {e}")

        if self._force_kill_handle is not None:
            self._force_kill_handle.cancel()

        sig = self._proc.signalstatus
        code = self._proc.exitstatus
        if code is None:
            code = 128 + sig if sig else 0
        self._status = ExitStatus(exit_code=code, signal=sig)

        if not self._eof:
            await asyncio.sleep(EXIT_DRAIN_SECONDS)
            if not self._eof:
                logger.info(f"pid {self.pid} exited but its terminal is still held open, ending output")
                self._end_of_stream()
        return self._status

    def close(self) -> None:
        """Release the master fd"""
        if self._closed:
            return
        self._closed = True
        if not self._reaper.done():
            self._reaper.cancel()
        self._stop_reading()
        if self._writing:
            self._loop.remove_writer(self._fd)
            self._writing = False
        self._pending.clear()
        self._proc.delayafterclose = 0
        try:
            self._proc.close(force=True)
        except (OSError, PtyProcessError) as e:
            logger.debug(f"Error closing PTY for pid {self.pid}: {e}")

    def _on_readable(self) -> None:
        try:
            data = os.read(self._fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # Linux reports EIO once the slave side has no more writers
            data = b""

        if not data:
            self._end_of_stream()
            return

        text = self._decoder.decode(data)
        if text:
            self._output.put_nowait(text)

    def _end_of_stream(self) -> None:
        if self._eof:
            return
        self._eof = True
        self._stop_reading()
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._output.put_nowait(tail)
        self._output.put_nowait(None)

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self._fd)
            self._reading = False

    def _flush(self) -> None:
        while self._pending:
            try:
                written = os.write(self._fd, self._pending)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug(f"Dropping {len(self._pending)} bytes of input for pid {self.pid}: {e}")
                self._pending.clear()
                break
            del self._pending[:written]

        if self._pending and not self._writing:
            self._loop.add_writer(self._fd, self._flush)
            self._writing = True
        elif not self._pending and self._writing:
            self._loop.remove_writer(self._fd)
            self._writing = False

    def _force_kill(self) -> None:
        if self.alive:
            logger.warning(f"pid {self.pid} ignored SIGHUP, sending SIGKILL")
            self._signal(signal.SIGKILL)

    def _signal(self, sig: int) -> None:
        try:
            os.kill(self._proc.pid, sig)
        except ProcessLookupError:
            pass
