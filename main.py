from fastapi import FastAPI, Request
from core.config import Settings, settings
from apis.route_pty import pty_router
from apis.route_sessions import sessions_router
from apis.route_health import health_router
from services.session_manager import SessionRegistry, Spawner
from typing import Optional
import logging

# Configure logging
logging.basicConfig(level=settings.LOG_LEVEL, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


def include_router(app):
      app.include_router(pty_router)
      app.include_router(sessions_router)
      app.include_router(health_router)


def start_application(app_settings: Optional[Settings] = None, spawner: Optional[Spawner] = None):
	app_settings = app_settings or settings

	app = FastAPI(title=app_settings.PROJECT_NAME, version=app_settings.PROJECT_VERSION)
	app.state.settings = app_settings
	app.state.session_registry = SessionRegistry.from_settings(app_settings, spawner=spawner)
	include_router(app)

	@app.on_event("startup")
	async def startup_event():
		registry = app.state.session_registry
		logger.info(
			f"Terminal sessions: shell={registry.shell}, "
			f"idle timeout={app_settings.SESSION_IDLE_TIMEOUT_SECONDS:g}s, "
			f"scrollback={app_settings.MAX_BUFFER_SIZE} chars"
		)

	@app.on_event("shutdown")
	async def shutdown_event():
		registry = app.state.session_registry
		logger.info(f"Shutting down, killing {len(registry)} terminal session(s)")
		await registry.shutdown()

	@app.middleware("http")
	async def log_requests(request: Request, call_next):
		logger.info(f"INCOMING REQUEST: {request.method} {request.url.path}")
		response = await call_next(request)
		logger.info(f"RESPONSE STATUS: {response.status_code} for {request.url.path}")
		return response

	return app


app = start_application()

if __name__ == "__main__":
    import uvicorn

    logger.info(f"Binding to http://{settings.HOST}:{settings.PORT}")
    uvicorn.run(
        app,
        host=settings.HOST,
        port=settings.PORT,
        ws_ping_interval=30,       # Keep frequent pings for connection health
        ws_ping_timeout=86400      # Allow very long idle sessions
    )
