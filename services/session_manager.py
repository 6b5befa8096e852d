"""
Persistent Session Manager
Manages persistent terminal sessions with multi-client support
Allows multiple devices to connect to the same terminal session
"""

import asyncio
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from core.exceptions import ConnectionSendFailure, UnknownSessionError, WriteAfterExit
from services.lifecycle import LifecycleSupervisor
from services.output_buffer import ReplayBuffer
from services.terminal_protocol import output_message, valid_terminal_size
from services.terminal_service import ShellProcess, default_shell

logger = logging.getLogger(__name__)

# spawner(argv, cwd, cols, rows, kill_grace=...) -> ShellProcess-like
Spawner = Callable[..., Awaitable[Any]]

CLOSE_NORMAL = 1000
CLOSE_TRY_AGAIN_LATER = 1013


def new_session_id() -> str:
    return str(uuid.uuid4())


class Subscription:
    """
    One connection's outbound channel for one session.

    The session pushes frames with deliver(), which never waits; the
    connection drains them with get(). get() returns None once the
    subscription is closed and drained.
    """

    _CLOSED = object()

    def __init__(self, session_id: str, maxsize: int = 1024):
        self.id = uuid.uuid4().hex
        self.session_id = session_id
        self.closed = False
        self.close_code = CLOSE_NORMAL
        self._queue: asyncio.Queue = asyncio.Queue(maxsize)

    def deliver(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionSendFailure(f"Subscription {self.id} is closed")
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull:
            raise ConnectionSendFailure(
                f"Client for session '{self.session_id}' is {self._queue.maxsize} frames behind"
            ) from None

    def close(self, final: Optional[Dict[str, Any]] = None, code: int = CLOSE_NORMAL) -> None:
        """Stop accepting frames; final (if any) is the last one the client sees"""
        if self.closed:
            return
        self.closed = True
        self.close_code = code

        frames = ([final] if final is not None else []) + [self._CLOSED]
        if self._queue.maxsize > 0:
            # A backed-up client loses its oldest frames, never the final ones
            while self._queue.qsize() + len(frames) > self._queue.maxsize:
                self._queue.get_nowait()
        for frame in frames:
            self._queue.put_nowait(frame)

    async def get(self) -> Optional[Dict[str, Any]]:
        frame = await self._queue.get()
        if frame is self._CLOSED:
            return None
        return frame


class TerminalSession:
    """A persistent terminal session that supports multiple connected clients"""

    def __init__(
        self,
        session_id: str,
        process: ShellProcess,
        cwd: str,
        cols: int,
        rows: int,
        buffer_limit: int,
        project: Optional[str] = None,
    ):
        self.id = session_id
        self.cwd = cwd
        self.project = project
        self.cols = cols
        self.rows = rows
        self.created_at = datetime.now(timezone.utc)
        self.last_activity: float = time.time()
        self.buffer = ReplayBuffer(buffer_limit)
        self.attached: Dict[str, Subscription] = {}
        self.idle_timer = None
        self.lock = asyncio.Lock()
        self.closing = False  # destroy() requested, exit not yet seen
        self.exited = False
        # Only the registry touches the process
        self._process = process

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "project": self.project,
            "cwd": self.cwd,
            "cols": self.cols,
            "rows": self.rows,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": datetime.fromtimestamp(self.last_activity, timezone.utc).isoformat(),
            "clients": len(self.attached),
            "bufferSize": len(self.buffer),
            "pid": self._process.pid,
            "alive": not (self.closing or self.exited) and self._process.alive,
        }


class SessionRegistry:
    """
    Owner of every live terminal session.

    Mutations of a session (attach, detach, output append and fan-out)
    happen under that session's lock, so unrelated sessions never contend.
    Everything runs on one event loop; plain synchronous methods here never
    yield and are atomic with respect to the coroutines.
    """

    def __init__(
        self,
        shell: Optional[str] = None,
        buffer_limit: int = 200_000,
        idle_timeout: float = 2 * 60 * 60,
        kill_grace: float = 5.0,
        client_queue_size: int = 1024,
        spawner: Optional[Spawner] = None,
    ):
        self.shell = shell or default_shell()
        self.buffer_limit = buffer_limit
        self.kill_grace = kill_grace
        self.client_queue_size = client_queue_size
        self.lifecycle = LifecycleSupervisor(self, idle_timeout)
        self._spawn: Spawner = spawner or ShellProcess.spawn
        self._sessions: Dict[str, TerminalSession] = {}
        self._pending: Dict[str, asyncio.Future] = {}
        self._pumps: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, app_settings, spawner: Optional[Spawner] = None) -> "SessionRegistry":
        return cls(
            shell=app_settings.SHELL,
            buffer_limit=app_settings.MAX_BUFFER_SIZE,
            idle_timeout=app_settings.SESSION_IDLE_TIMEOUT_SECONDS,
            kill_grace=app_settings.KILL_GRACE_SECONDS,
            client_queue_size=app_settings.CLIENT_QUEUE_SIZE,
            spawner=spawner,
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    async def create(
        self,
        cwd: str,
        cols: int,
        rows: int,
        session_id: Optional[str] = None,
        project: Optional[str] = None,
    ) -> TerminalSession:
        """
        Start a shell in cwd, or return the live session already using session_id.

        Concurrent calls for the same id spawn a single process.

        Raises:
            SpawnError: the shell could not be started
        """
        session_id = session_id or new_session_id()

        existing = self._sessions.get(session_id)
        if existing is not None:
            return existing

        pending = self._pending.get(session_id)
        if pending is not None:
            return await asyncio.shield(pending)

        pending = asyncio.get_running_loop().create_future()
        self._pending[session_id] = pending
        try:
            process = await self._spawn([self.shell], cwd, cols, rows, kill_grace=self.kill_grace)
        except Exception as e:
            pending.set_exception(e)
            pending.exception()  # waiters re-raise it themselves
            raise
        except BaseException:
            pending.cancel()
            raise
        finally:
            self._pending.pop(session_id, None)

        session = TerminalSession(
            session_id,
            process,
            cwd=cwd,
            cols=cols,
            rows=rows,
            buffer_limit=self.buffer_limit,
            project=project,
        )
        self._sessions[session_id] = session
        self.lifecycle.arm(session)

        task = asyncio.create_task(self._pump(session))
        self._pumps.add(task)
        task.add_done_callback(self._pump_finished)

        logger.info(f"Started session '{session_id}' in {cwd} ({cols}x{rows}), {len(self._sessions)} live")
        pending.set_result(session)
        return session

    def get(self, session_id: str) -> Optional[TerminalSession]:
        return self._sessions.get(session_id)

    def list(self, project: Optional[str] = None) -> List[Dict[str, Any]]:
        """Snapshot of session summaries, oldest first"""
        sessions = sorted(self._sessions.values(), key=lambda s: s.created_at)
        return [s.summary() for s in sessions if project is None or s.project == project]

    def resize(self, session_id: str, cols: int, rows: int) -> bool:
        """
        Raises:
            ValueError: cols or rows outside 1..65535
        """
        if not valid_terminal_size(cols, rows):
            raise ValueError(f"Invalid terminal size {cols}x{rows}")
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session._process.resize(cols, rows)
        session.cols = cols
        session.rows = rows
        session.last_activity = time.time()
        return True

    def write(self, session_id: str, data: str) -> None:
        """
        Raises:
            WriteAfterExit: the session is gone (callers drop the input)
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise WriteAfterExit(f"Session '{session_id}' has ended")
        session._process.write(data)
        session.last_activity = time.time()

    def destroy(self, session_id: str) -> bool:
        """
        Kill the shell and unregister the session.

        Attached clients get their exit frame from the exit path once the
        process is reaped, so a destroy racing a natural exit still produces
        exactly one notification.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return False

        session.closing = True
        self.lifecycle.disarm(session)
        try:
            session._process.kill()
        except OSError as e:
            logger.warning(f"Error killing session '{session_id}': {e}")
        del self._sessions[session_id]
        logger.info(f"Destroyed session '{session_id}', {len(self._sessions)} live")
        return True

    def destroy_project(self, project: str) -> List[str]:
        killed = [s.id for s in list(self._sessions.values()) if s.project == project]
        for session_id in killed:
            self.destroy(session_id)
        return killed

    def capture_tail(self, session_id: str, max_lines: int = 40, strip_escapes: bool = False) -> str:
        session = self._sessions.get(session_id)
        if session is None:
            return ""
        return session.buffer.tail(max_lines, strip_escapes)

    async def attach(self, session_id: str, subscription: Subscription) -> None:
        """
        Register a connection and replay the scrollback to it.

        Raises:
            UnknownSessionError: no live session has this id
        """
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSessionError(session_id)

        async with session.lock:
            if session.closing or session.exited:
                raise UnknownSessionError(session_id)
            self.lifecycle.disarm(session)
            session.attached[subscription.id] = subscription
            scrollback = session.buffer.snapshot()
            if scrollback:
                subscription.deliver(output_message(scrollback))

        logger.info(f"Client connected to '{session_id}'. Total clients: {len(session.attached)}")

    async def detach(self, session_id: str, subscription: Subscription) -> None:
        """Remove a connection (the terminal stays alive)"""
        session = self._sessions.get(session_id)
        if session is None:
            return

        async with session.lock:
            if session.attached.pop(subscription.id, None) is None:
                return
            if not session.attached:
                self.lifecycle.arm(session)

        logger.info(f"Client disconnected from '{session_id}'. Remaining clients: {len(session.attached)}")

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Kill every session and wait for their teardown"""
        for session_id in list(self._sessions):
            self.destroy(session_id)
        if self._pumps:
            await asyncio.wait(set(self._pumps), timeout=timeout or self.kill_grace + 1)

    def _discard(self, session: TerminalSession) -> None:
        if self._sessions.get(session.id) is session:
            del self._sessions[session.id]

    async def _pump(self, session: TerminalSession) -> None:
        """Read the shell's output and fan it out, then run the exit path"""
        process = session._process
        try:
            while True:
                chunk = await process.read()
                if chunk is None:
                    break
                await self._publish(session, chunk)
            status = await process.wait()
            await self.lifecycle.session_exited(session, status)
        finally:
            process.close()

    async def _publish(self, session: TerminalSession, chunk: str) -> None:
        message = output_message(chunk)
        async with session.lock:
            session.buffer.append(chunk)
            session.last_activity = time.time()
            for subscription in list(session.attached.values()):
                try:
                    subscription.deliver(message)
                except ConnectionSendFailure as e:
                    logger.warning(f"Dropping client from '{session.id}': {e}")
                    del session.attached[subscription.id]
                    subscription.close(code=CLOSE_TRY_AGAIN_LATER)
            if not session.attached:
                self.lifecycle.arm(session)

    def _pump_finished(self, task: asyncio.Task) -> None:
        self._pumps.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Session output pump failed", exc_info=task.exception())
