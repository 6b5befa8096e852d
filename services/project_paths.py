"""Map a project reference from the connection URL to a working directory."""

import logging
import os
from typing import Optional

from core.config import Settings, settings
from core.exceptions import ProjectPathError

logger = logging.getLogger(__name__)


def projects_root(app_settings: Settings = settings) -> str:
    return os.path.realpath(os.path.expanduser(app_settings.PROJECTS_DIR))


def resolve_working_directory(project: Optional[str], app_settings: Settings = settings) -> str:
    """
    Return the absolute directory a new session for ``project`` starts in.

    No project means DEFAULT_CWD (or the home directory). A project is a
    path under PROJECTS_DIR; it may not escape that directory, and it is
    created if it does not exist yet.

    Raises:
        ProjectPathError: the reference escapes PROJECTS_DIR or cannot be created
    """
    if not project:
        return os.path.abspath(os.path.expanduser(app_settings.DEFAULT_CWD or "~"))

    if "\x00" in project or os.path.isabs(project):
        raise ProjectPathError(f"Invalid project name: {project!r}")

    root = projects_root(app_settings)
    path = os.path.realpath(os.path.join(root, project))
    if path == root or os.path.commonpath([root, path]) != root:
        raise ProjectPathError(f"Invalid project name: {project!r}")

    if not os.path.isdir(path):
        try:
            os.makedirs(path, exist_ok=True)
        except OSError as e:
            raise ProjectPathError(f"Cannot create project directory {path}: {e}") from e
        logger.info(f"Created project directory {path}")

    return path
