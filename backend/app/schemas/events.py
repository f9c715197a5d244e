"""
Socket event catalogue.

Every frame is {"event": <name>, "data": {...}}. Inbound and outbound sets
are closed unions discriminated on `event`.
"""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, TypeAdapter

from app.models.support_conversation import ConversationTopic
from app.models.support_message import MessageKind, SenderKind
from app.schemas.support import ConversationOut, MessageOut


# ---------------------------------------------------------------- inbound

class ConversationRef(BaseModel):
    conversation_id: str = Field(..., min_length=1, max_length=36)


class MessageSendData(BaseModel):
    conversation_id: Optional[str] = Field(None, max_length=36)
    body: str
    kind: MessageKind = MessageKind.TEXT
    # Used when conversation_id is omitted (account/guest only)
    topic: ConversationTopic = ConversationTopic.GENERAL


class MessageRef(BaseModel):
    message_id: str = Field(..., min_length=1, max_length=36)


class ConversationJoinIn(BaseModel):
    event: Literal["conversation:join"]
    data: ConversationRef


class ConversationLeaveIn(BaseModel):
    event: Literal["conversation:leave"]
    data: ConversationRef


class MessageSendIn(BaseModel):
    event: Literal["message:send"]
    data: MessageSendData


class MessageReadIn(BaseModel):
    event: Literal["message:read"]
    data: MessageRef


class TypingStartIn(BaseModel):
    event: Literal["typing:start"]
    data: ConversationRef


class TypingStopIn(BaseModel):
    event: Literal["typing:stop"]
    data: ConversationRef


InboundEvent = Annotated[
    Union[ConversationJoinIn, ConversationLeaveIn, MessageSendIn, MessageReadIn, TypingStartIn, TypingStopIn],
    Field(discriminator="event"),
]

inbound_event_adapter = TypeAdapter(InboundEvent)


# ---------------------------------------------------------------- outbound

class ConnectOkData(BaseModel):
    connection_id: str
    kind: Literal["account", "guest", "operator"]
    id: str
    guest_token: Optional[str] = None
    minted_guest_token: bool = False


class ErrorData(BaseModel):
    code: str
    message: str
    request_event: Optional[str] = None


class MessageReadData(BaseModel):
    message_id: str
    conversation_id: str
    read_at: Optional[datetime] = None


class UnreadCountData(BaseModel):
    conversation_id: str
    count: int
    viewer_kind: Literal["account", "guest", "operator"]
    total_unread_count: Optional[int] = None


class TypingData(BaseModel):
    conversation_id: str
    sender_kind: SenderKind
    sender_ref: str


class NewActivityData(BaseModel):
    conversation_id: str
    message_id: str
    preview: str
    sender_kind: SenderKind
    topic: ConversationTopic
    new_conversation: bool = False


class ConnectOk(BaseModel):
    event: Literal["connect:ok"] = "connect:ok"
    data: ConnectOkData


class ConnectError(BaseModel):
    event: Literal["connect:error"] = "connect:error"
    data: ErrorData


class ErrorEvent(BaseModel):
    event: Literal["error"] = "error"
    data: ErrorData


class ConversationJoined(BaseModel):
    event: Literal["conversation:joined"] = "conversation:joined"
    data: ConversationRef


class ConversationLeft(BaseModel):
    event: Literal["conversation:left"] = "conversation:left"
    data: ConversationRef


class ConversationUpdated(BaseModel):
    event: Literal["conversation:updated"] = "conversation:updated"
    data: ConversationOut


class MessageReceived(BaseModel):
    event: Literal["message:received"] = "message:received"
    data: MessageOut


class MessageSent(BaseModel):
    """Acknowledges a stored message to the connection that sent it."""
    event: Literal["message:sent"] = "message:sent"
    data: MessageOut


class MessageRead(BaseModel):
    event: Literal["message:read"] = "message:read"
    data: MessageReadData


class UnreadCount(BaseModel):
    event: Literal["unread_count"] = "unread_count"
    data: UnreadCountData


class TypingStarted(BaseModel):
    event: Literal["typing:start"] = "typing:start"
    data: TypingData


class TypingStopped(BaseModel):
    event: Literal["typing:stop"] = "typing:stop"
    data: TypingData


class NewActivity(BaseModel):
    event: Literal["conversation:new_activity"] = "conversation:new_activity"
    data: NewActivityData


OutboundEvent = Union[
    ConnectOk,
    ConnectError,
    ErrorEvent,
    ConversationJoined,
    ConversationLeft,
    ConversationUpdated,
    MessageReceived,
    MessageSent,
    MessageRead,
    UnreadCount,
    TypingStarted,
    TypingStopped,
    NewActivity,
]

# Only delivered to operators allowed to see the support queue
STAFF_ONLY_EVENTS = (NewActivity,)


def preview_of(body: str, limit: int = 120) -> str:
    body = " ".join(body.split())
    return body if len(body) <= limit else body[: limit - 1] + "…"
