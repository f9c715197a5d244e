"""
Auth Code Model - short-lived, single-use numeric hand-off code.

pending -> used, or pending -> expired (discovered on verification).
Both terminal.
"""

import enum
import uuid
from sqlalchemy import Column, String, Text, ForeignKey, Index, text

from app.core.time_utils import get_utc_now
from app.db.base import Base
from app.db.column_types import UTCDateTime


class AuthCodeStatus(str, enum.Enum):
    PENDING = 'pending'
    USED = 'used'
    EXPIRED = 'expired'


class AuthCode(Base):
    __tablename__ = "auth_codes"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String(10), nullable=False, index=True)

    operator_id = Column(String(64), nullable=False)
    account_id = Column(String(64), nullable=True)
    guest_token = Column(String(100), nullable=True)
    conversation_id = Column(String(36), ForeignKey("support_conversations.id"), nullable=True)

    status = Column(String(20), nullable=False, default=AuthCodeStatus.PENDING.value, index=True)
    expires_at = Column(UTCDateTime, nullable=False)
    used_at = Column(UTCDateTime, nullable=True)
    device_info = Column(Text, nullable=True)  # opaque, usually JSON

    created_at = Column(UTCDateTime, default=get_utc_now, nullable=False)

    __table_args__ = (
        # A code value is only reserved while it is pending
        Index(
            "uq_auth_codes_pending_code",
            "code",
            unique=True,
            sqlite_where=text("status = 'pending'"),
            postgresql_where=text("status = 'pending'"),
        ),
    )
