from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket

from apis.dependencies import get_app_settings, get_session_registry
from core.config import Settings
from services.pty_service import TerminalBridge
from services.session_manager import SessionRegistry
import logging

logger = logging.getLogger(__name__)

pty_router = APIRouter(tags=["PTY"])


@pty_router.websocket("/ws")
async def terminal_connect(
    websocket: WebSocket,
    session_id: Optional[str] = Query(None, alias="sessionID"),
    project: Optional[str] = Query(None, alias="projectName"),
    cols: Optional[int] = None,
    rows: Optional[int] = None,
    registry: SessionRegistry = Depends(get_session_registry),
    app_settings: Settings = Depends(get_app_settings),
):
    """sessionID attaches to a running shell; otherwise a new one starts for projectName"""
    logger.info(f"Terminal WebSocket connection: session={session_id}, project={project}")
    bridge = TerminalBridge(websocket, registry, app_settings)
    await bridge.handle(session_id=session_id, project=project, cols=cols, rows=rows)
