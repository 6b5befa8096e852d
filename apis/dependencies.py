from fastapi.requests import HTTPConnection

from core.config import Settings
from services.session_manager import SessionRegistry


def get_session_registry(connection: HTTPConnection) -> SessionRegistry:
    """The registry built by start_application(), shared by HTTP and WebSocket routes"""
    return connection.app.state.session_registry


def get_app_settings(connection: HTTPConnection) -> Settings:
    return connection.app.state.settings
