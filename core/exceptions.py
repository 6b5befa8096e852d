"""
Error taxonomy for terminal sessions.

Connection-local and session-local failures are caught where they happen
(bridge, fan-out) and never reach the registry or unrelated sessions.
"""


class TerminalError(Exception):
    """Base class for terminal session errors"""


class SpawnError(TerminalError):
    """The OS could not start the shell or its pseudo-terminal"""


class UnknownSessionError(TerminalError):
    """An explicit session id was given but no such session is live"""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class WriteAfterExit(TerminalError):
    """Input or resize arrived for a session that has already ended"""


class ConnectionSendFailure(TerminalError):
    """Delivering a frame to one attached connection failed"""


class ProtocolError(TerminalError):
    """A client frame could not be parsed or has an unknown type"""


class ProjectPathError(TerminalError, ValueError):
    """A project reference does not map to a usable working directory"""
