"""
Terminal session administration
List, inspect and kill running shells
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from apis.dependencies import get_session_registry
from services.session_manager import SessionRegistry
import logging

logger = logging.getLogger(__name__)

sessions_router = APIRouter(prefix="/api", tags=["Sessions"])


@sessions_router.get("/sessions")
async def list_sessions(
    project: Optional[str] = None,
    registry: SessionRegistry = Depends(get_session_registry),
):
    return {"sessions": registry.list(project=project)}


@sessions_router.get("/sessions/{session_id}")
async def get_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session.summary()


@sessions_router.get("/sessions/{session_id}/tail")
async def session_tail(
    session_id: str,
    lines: int = Query(40, ge=1, le=10_000),
    strip: bool = False,
    registry: SessionRegistry = Depends(get_session_registry),
):
    """Last lines of scrollback, e.g. for a status snippet in a session list"""
    if session_id not in registry:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"id": session_id, "tail": registry.capture_tail(session_id, lines, strip_escapes=strip)}


@sessions_router.delete("/sessions/{session_id}")
async def kill_session(session_id: str, registry: SessionRegistry = Depends(get_session_registry)):
    if not registry.destroy(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    logger.info(f"Session killed via API: {session_id}")
    return {"message": "Session killed successfully", "sessionId": session_id}


@sessions_router.get("/projects/{project}/sessions/stats")
async def project_session_stats(project: str, registry: SessionRegistry = Depends(get_session_registry)):
    sessions = registry.list(project=project)
    active = sum(1 for s in sessions if s["alive"])
    return {
        "project": project,
        "totalSessions": len(sessions),
        "activeSessions": active,
        "inactiveSessions": len(sessions) - active,
    }


@sessions_router.delete("/projects/{project}/sessions")
async def kill_project_sessions(project: str, registry: SessionRegistry = Depends(get_session_registry)):
    killed = registry.destroy_project(project)
    logger.info(f"Killed {len(killed)} session(s) for project {project}")
    return {"message": f"Killed {len(killed)} sessions", "killedSessions": killed}
