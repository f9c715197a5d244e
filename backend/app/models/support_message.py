"""
Support Message Model - append-only log of a conversation.

Only is_read / read_at change after insert, and only false -> true.
"""

import enum
import uuid
from sqlalchemy import Column, String, Text, Integer, Boolean, ForeignKey, Index

from app.core.time_utils import get_utc_now
from app.db.base import Base
from app.db.column_types import UTCDateTime


class SenderKind(str, enum.Enum):
    ACCOUNT = 'account'
    OPERATOR = 'operator'
    GUEST = 'guest'
    SYSTEM = 'system'


class MessageKind(str, enum.Enum):
    TEXT = 'text'
    FILE = 'file'
    SYSTEM = 'system'
    AUTH_CODE = 'auth_code'


class SupportMessage(Base):
    __tablename__ = "support_messages"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(
        String(36), ForeignKey("support_conversations.id"), nullable=False, index=True
    )

    sender_kind = Column(String(20), nullable=False)
    # account id, operator id or guest token (None for system)
    sender_ref = Column(String(100), nullable=True)

    body = Column(Text, nullable=False)
    kind = Column(String(20), nullable=False, default=MessageKind.TEXT.value)

    file_url = Column(Text, nullable=True)
    file_name = Column(String(255), nullable=True)
    file_size = Column(Integer, nullable=True)

    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=get_utc_now, nullable=False)

    __table_args__ = (
        Index("ix_support_messages_unread", "conversation_id", "sender_kind", "is_read"),
        Index("ix_support_messages_timeline", "conversation_id", "created_at"),
    )
