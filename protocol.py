import logging
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class JoinPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    room_id: str = Field(alias="roomId")
    username: str


class ChatPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # the registry decides the room; this is only echoed by clients
    room_id: str | None = Field(default=None, alias="roomId")
    username: str
    message: str | None = None


class JoinMessage(BaseModel):
    type: Literal["join"]
    payload: JoinPayload


class ChatMessage(BaseModel):
    type: Literal["chat"]
    payload: ChatPayload


class OutboundMessage(BaseModel):
    """Frame delivered to every member of a room."""

    username: str
    message: str


InboundMessage = Annotated[
    Union[JoinMessage, ChatMessage], Field(discriminator="type")
]

_inbound = TypeAdapter(InboundMessage)


def decode(raw: str | bytes) -> JoinMessage | ChatMessage | None:
    """
    Parse one inbound frame. Returns None for anything that is not a
    well-formed join or chat message; the relay never answers protocol
    violations.
    """
    try:
        return _inbound.validate_json(raw)
    except ValidationError as e:
        logger.warning("dropping malformed frame: %s", e.errors(include_url=False))
        return None
