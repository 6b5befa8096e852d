"""
Terminal WebSocket protocol
JSON text frames, discriminated by their "type" field
"""

import json
from typing import Annotated, Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from core.exceptions import ProtocolError

# struct winsize holds unsigned shorts
MAX_TERMINAL_DIMENSION = 65535


def valid_terminal_size(cols: int, rows: int) -> bool:
    return 0 < cols <= MAX_TERMINAL_DIMENSION and 0 < rows <= MAX_TERMINAL_DIMENSION


# Client -> server

class InputMessage(BaseModel):
    type: Literal["input"]
    data: str


class ResizeMessage(BaseModel):
    type: Literal["resize"]
    cols: int
    rows: int

    def is_valid_size(self) -> bool:
        return valid_terminal_size(self.cols, self.rows)


ClientMessage = Annotated[Union[InputMessage, ResizeMessage], Field(discriminator="type")]

_client_message_adapter = TypeAdapter(ClientMessage)

CLIENT_MESSAGE_TYPES = ("input", "resize")


def parse_client_message(raw: str) -> Union[InputMessage, ResizeMessage]:
    """
    Validate one inbound frame.

    Raises:
        ProtocolError: malformed JSON, unknown "type", or bad fields
    """
    try:
        payload = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ProtocolError("Message must be a JSON object")

    kind = payload.get("type")
    if kind not in CLIENT_MESSAGE_TYPES:
        raise ProtocolError(f"Unknown message type: {kind!r}")

    try:
        return _client_message_adapter.validate_python(payload)
    except ValidationError as e:
        raise ProtocolError(f"Invalid {kind} message: {e.error_count()} field error(s)") from e


# Server -> client

def session_id_message(session_id: str) -> Dict[str, Any]:
    return {"type": "sessionID", "sessionID": session_id}


def output_message(data: str) -> Dict[str, Any]:
    return {"type": "output", "data": data}


def exit_message(exit_code: int, signal: Optional[int]) -> Dict[str, Any]:
    return {"type": "exit", "exitCode": exit_code, "signal": signal}


def error_message(message: str) -> Dict[str, Any]:
    return {"type": "error", "message": message}
