import asyncio
import json
import logging
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from core.config import Settings
from core.exceptions import (
    ConnectionSendFailure,
    ProjectPathError,
    ProtocolError,
    SpawnError,
    UnknownSessionError,
    WriteAfterExit,
)
from services.project_paths import resolve_working_directory
from services.session_manager import SessionRegistry, Subscription
from services.terminal_protocol import (
    InputMessage,
    ResizeMessage,
    error_message,
    parse_client_message,
    session_id_message,
    valid_terminal_size,
)

logger = logging.getLogger(__name__)

# Close codes for connections that never got attached
CLOSE_BAD_PROJECT = 4400
CLOSE_UNKNOWN_SESSION = 4404
CLOSE_SPAWN_FAILED = 4500


class TerminalBridge:
    """
    One browser connection to one terminal session.

    The bridge keeps only the session id and its Subscription; every call
    that reaches the shell goes through the registry.
    """

    def __init__(self, websocket: WebSocket, registry: SessionRegistry, app_settings: Settings):
        self.websocket = websocket
        self.registry = registry
        self.settings = app_settings
        self.session_id: Optional[str] = None
        self.subscription: Optional[Subscription] = None

    async def handle(
        self,
        session_id: Optional[str] = None,
        project: Optional[str] = None,
        cols: Optional[int] = None,
        rows: Optional[int] = None,
    ) -> None:
        await self.websocket.accept()

        try:
            if session_id:
                await self._attach_existing(session_id)
            else:
                await self._create_new(project, cols, rows)
        except UnknownSessionError as e:
            await self._reject(str(e), CLOSE_UNKNOWN_SESSION)
            return
        except ProjectPathError as e:
            await self._reject(str(e), CLOSE_BAD_PROJECT)
            return
        except SpawnError as e:
            logger.error(f"Could not start shell for project {project}: {e}")
            await self._reject(f"Failed to start terminal: {e}", CLOSE_SPAWN_FAILED)
            return
        except WebSocketDisconnect:
            logger.info("Client went away before its session was attached")
            return

        try:
            await self._relay()
        finally:
            await self.registry.detach(self.session_id, self.subscription)
            self.subscription.close()
            logger.info(f"Terminal connection closed: {self.session_id}")

    async def _attach_existing(self, session_id: str) -> None:
        # An unknown explicit id is a client error, never a reason to spawn
        if self.registry.get(session_id) is None:
            raise UnknownSessionError(session_id)
        await self._subscribe(session_id)

    async def _create_new(self, project: Optional[str], cols: Optional[int], rows: Optional[int]) -> None:
        cwd = resolve_working_directory(project, self.settings)
        if not (cols and rows and valid_terminal_size(cols, rows)):
            cols, rows = self.settings.DEFAULT_COLS, self.settings.DEFAULT_ROWS
        session = await self.registry.create(cwd, cols, rows, project=project)
        await self._send(session_id_message(session.id))
        await self._subscribe(session.id)

    async def _subscribe(self, session_id: str) -> None:
        subscription = Subscription(session_id, maxsize=self.registry.client_queue_size)
        await self.registry.attach(session_id, subscription)
        self.session_id = session_id
        self.subscription = subscription

    async def _relay(self) -> None:
        """Pump client frames to the shell and session frames to the client until either side ends"""
        tasks = {
            asyncio.create_task(self._read_from_client()),
            asyncio.create_task(self._write_to_client()),
        }
        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            if task.exception() is not None:
                logger.error(f"Terminal connection error for '{self.session_id}': {task.exception()}")

    async def _read_from_client(self) -> None:
        while True:
            message = await self.websocket.receive()
            if message.get("type") == "websocket.disconnect":
                return

            raw = message.get("text")
            if raw is None and message.get("bytes") is not None:
                raw = message["bytes"].decode("utf-8", errors="replace")
            if raw is None:
                continue

            try:
                frame = parse_client_message(raw)
            except ProtocolError as e:
                logger.warning(f"Rejected frame on '{self.session_id}': {e}")
                self._queue(error_message(str(e)))
                continue

            self._dispatch(frame)

    def _dispatch(self, frame) -> None:
        if isinstance(frame, InputMessage):
            try:
                self.registry.write(self.session_id, frame.data)
            except WriteAfterExit:
                logger.debug(f"Dropped input for ended session '{self.session_id}'")
        elif isinstance(frame, ResizeMessage):
            if not frame.is_valid_size():
                logger.debug(f"Ignoring resize to {frame.cols}x{frame.rows}")
                return
            self.registry.resize(self.session_id, frame.cols, frame.rows)

    async def _write_to_client(self) -> None:
        while True:
            message = await self.subscription.get()
            if message is None:
                break
            try:
                await self._send(message)
            except Exception as e:
                # Treated as a detach; the session and its other clients carry on
                logger.warning(f"Send to client of '{self.session_id}' failed: {type(e).__name__}: {e}")
                return
        await self._close(self.subscription.close_code)

    def _queue(self, message: Dict[str, Any]) -> None:
        try:
            self.subscription.deliver(message)
        except ConnectionSendFailure as e:
            logger.debug(f"Could not queue frame for '{self.session_id}': {e}")

    async def _send(self, message: Dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(message))

    async def _reject(self, reason: str, code: int) -> None:
        logger.warning(f"Rejecting terminal connection: {reason}")
        try:
            await self._send(error_message(reason))
        except Exception as e:
            logger.debug(f"Could not send error frame: {e}")
        await self._close(code)

    async def _close(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"WebSocket already closed: {e}")
