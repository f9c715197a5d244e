from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import List, Optional
from datetime import datetime

from app.models.support_conversation import ConversationTopic, ConversationStatus, ConversationPriority
from app.models.support_message import SenderKind, MessageKind


class FileRef(BaseModel):
    """Opaque pointer to an uploaded attachment."""
    key: str
    url: str
    name: str
    size: int
    content_type: str = "application/octet-stream"


class ConversationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    account_id: Optional[str] = None
    guest_token: Optional[str] = None
    operator_id: Optional[str] = None
    topic: ConversationTopic
    subject: Optional[str] = None
    status: ConversationStatus
    priority: ConversationPriority
    last_message_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime
    unread_count: int = 0


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    conversation_id: str
    sender_kind: SenderKind
    sender_ref: Optional[str] = None
    body: str
    kind: MessageKind
    file_url: Optional[str] = None
    file_name: Optional[str] = None
    file_size: Optional[int] = None
    is_read: bool
    read_at: Optional[datetime] = None
    created_at: datetime


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    total_pages: int


class MessagePage(BaseModel):
    messages: List[MessageOut]
    pagination: Pagination


class ConversationPage(BaseModel):
    conversations: List[ConversationOut]
    pagination: Pagination


class ConversationRequest(BaseModel):
    topic: ConversationTopic = ConversationTopic.GENERAL
    subject: Optional[str] = Field(None, max_length=255)


class GuestConversationRequest(ConversationRequest):
    guest_token: Optional[str] = Field(None, description="Previously issued guest token, if any")


class GuestConversationResponse(BaseModel):
    guest_token: str
    conversation: ConversationOut


class StatusUpdateRequest(BaseModel):
    status: ConversationStatus


class AssignRequest(BaseModel):
    operator_id: Optional[str] = Field(None, description="Defaults to the calling operator")


class PriorityUpdateRequest(BaseModel):
    priority: ConversationPriority


class GenerateCodeRequest(BaseModel):
    account_id: Optional[str] = None
    guest_token: Optional[str] = None
    conversation_id: Optional[str] = None
    device_info: Optional[str] = Field(None, max_length=2000)


class GeneratedCodeResponse(BaseModel):
    id: str
    code: str
    expires_at: datetime
    conversation_id: Optional[str] = None


class VerifyCodeRequest(BaseModel):
    code: str = Field(..., max_length=32)
    account_id: Optional[str] = None
    guest_token: Optional[str] = None

    @field_validator("code")
    @classmethod
    def strip_code(cls, v: str) -> str:
        return v.strip()


class VerifiedCode(BaseModel):
    auth_code_id: str
    operator_id: str
    account_id: Optional[str] = None
    guest_token: Optional[str] = None
    conversation_id: Optional[str] = None


class VerifyCodeResponse(BaseModel):
    success: bool
    message: str
    data: Optional[VerifiedCode] = None


class UnreadTotal(BaseModel):
    total_unread_count: int
