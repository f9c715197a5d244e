"""
Support Conversation Model - one support thread.

Owned by exactly one Account or Guest. At most one conversation per
(owner, topic) may be open at a time; closed/resolved threads are never
reopened, the next message starts a new one.
"""

import enum
import uuid
from sqlalchemy import Column, String, Index, CheckConstraint, text

from app.core.time_utils import get_utc_now
from app.db.base import Base
from app.db.column_types import UTCDateTime


class ConversationTopic(str, enum.Enum):
    GENERAL = 'general'
    ONBOARDING = 'onboarding'
    CALL_REQUEST = 'call_request'


class ConversationStatus(str, enum.Enum):
    OPEN = 'open'
    CLOSED = 'closed'
    RESOLVED = 'resolved'


class ConversationPriority(str, enum.Enum):
    LOW = 'low'
    NORMAL = 'normal'
    HIGH = 'high'
    URGENT = 'urgent'


class SupportConversation(Base):
    __tablename__ = "support_conversations"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Owner: exactly one of these is set
    account_id = Column(String(64), nullable=True, index=True)
    guest_token = Column(String(100), nullable=True, index=True)

    operator_id = Column(String(64), nullable=True, index=True)

    topic = Column(String(20), nullable=False, default=ConversationTopic.GENERAL.value)
    subject = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, default=ConversationStatus.OPEN.value, index=True)
    priority = Column(String(20), nullable=False, default=ConversationPriority.NORMAL.value)

    last_message_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=get_utc_now, nullable=False)
    updated_at = Column(UTCDateTime, default=get_utc_now, onupdate=get_utc_now, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(account_id IS NULL) <> (guest_token IS NULL)",
            name="ck_support_conversation_single_owner",
        ),
        # One open thread per owner+topic
        Index(
            "uq_support_conversation_open_account",
            "account_id", "topic",
            unique=True,
            sqlite_where=text("status = 'open' AND account_id IS NOT NULL"),
            postgresql_where=text("status = 'open' AND account_id IS NOT NULL"),
        ),
        Index(
            "uq_support_conversation_open_guest",
            "guest_token", "topic",
            unique=True,
            sqlite_where=text("status = 'open' AND guest_token IS NOT NULL"),
            postgresql_where=text("status = 'open' AND guest_token IS NOT NULL"),
        ),
    )

    @property
    def owner_ref(self) -> str:
        return self.account_id or self.guest_token

    @property
    def owner_kind(self) -> str:
        return "account" if self.account_id else "guest"

    @property
    def is_open(self) -> bool:
        return self.status == ConversationStatus.OPEN.value
