from fastapi import APIRouter, Depends

from apis.dependencies import get_session_registry
from services.session_manager import SessionRegistry

health_router = APIRouter(prefix="/api", tags=["Health"])


@health_router.get("/health")
async def health(registry: SessionRegistry = Depends(get_session_registry)):
    return {"status": "ok", "sessions": len(registry)}
