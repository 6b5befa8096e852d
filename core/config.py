from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    PROJECT_NAME: str = "Web Terminal"
    PROJECT_VERSION: str = "1.0.0"

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 3111
    LOG_LEVEL: str = "INFO"

    # Where project working directories live; each project is one subdirectory
    PROJECTS_DIR: str = "projects"
    DEFAULT_CWD: Optional[str] = None  # None = home directory
    SHELL: Optional[str] = None  # None = $SHELL, then /bin/bash

    # Terminal sessions
    SESSION_IDLE_TIMEOUT_SECONDS: float = 2 * 60 * 60  # 2 hours with no attached client
    MAX_BUFFER_SIZE: int = 200_000  # characters of scrollback replayed on attach
    DEFAULT_COLS: int = 80
    DEFAULT_ROWS: int = 24
    KILL_GRACE_SECONDS: float = 5.0  # SIGHUP -> SIGKILL escalation
    CLIENT_QUEUE_SIZE: int = 1024  # outbound frames buffered per connection

settings = Settings()
