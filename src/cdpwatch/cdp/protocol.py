"""CDP wire types.

Minimal pydantic models for the frames exchanged with the browser. Domain
specific payloads stay plain dicts; only the envelope is typed.
"""

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

TargetID = str
SessionID = str
RequestID = int


class CDPRequest(BaseModel):
    """Command sent to the browser."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: RequestID
    method: str
    params: dict[str, Any] = Field(default_factory=dict)
    session_id: SessionID | None = Field(default=None, alias='sessionId')

    def to_message(self) -> str:
        """Serialize to the JSON text frame written on the socket."""
        return self.model_dump_json(by_alias=True, exclude_none=True)


class CDPResponseError(BaseModel):
    """Error object of a failed command."""

    code: int = -32000
    message: str = ''
    data: Any | None = None


class CDPResponse(BaseModel):
    """Answer to a command, matched by id."""

    model_config = ConfigDict(populate_by_name=True)

    id: RequestID
    result: dict[str, Any] | None = None
    error: CDPResponseError | None = None
    session_id: SessionID | None = Field(default=None, alias='sessionId')


class CDPEvent(BaseModel):
    """Event pushed by the browser."""

    model_config = ConfigDict(populate_by_name=True)

    method: str
    params: dict[str, Any] = Field(default_factory=dict)
    session_id: SessionID | None = Field(default=None, alias='sessionId')


class TargetInfo(BaseModel):
    """Subset of Target.TargetInfo used by sessions and watchdogs."""

    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    target_id: TargetID = Field(alias='targetId')
    type: str = 'page'
    title: str = ''
    url: str = ''
    attached: bool = False


def parse_message(raw: str | bytes) -> CDPResponse | CDPEvent:
    """Classify one inbound frame.

    A frame carrying an ``id`` is a response; a frame carrying a ``method``
    (and no id) is an event.

    Raises:
        ValueError: If the frame is not JSON or is neither kind.
    """
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f'Expected a JSON object, got {type(data).__name__}')
    if data.get('id') is not None:
        return CDPResponse.model_validate(data)
    if 'method' in data:
        if data.get('params') is None:
            data['params'] = {}
        return CDPEvent.model_validate(data)
    raise ValueError(f'Frame is neither a response nor an event: {str(data)[:100]}')
