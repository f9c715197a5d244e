from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional, Tuple

import structlog
from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.exceptions import NotFound, InvalidState, ValidationFailed
from app.core.time_utils import get_utc_now
from app.models.support_conversation import SupportConversation
from app.models.support_message import SupportMessage, SenderKind, MessageKind
from app.schemas.support import FileRef
from app.services.unread_counter import UnreadCounter, receiver_kind_for

logger = structlog.get_logger()

MAX_BODY_LENGTH = 5000


@dataclass
class AppendResult:
    message: SupportMessage
    conversation: SupportConversation


@dataclass
class ReadReceipt:
    message: SupportMessage
    conversation_id: str
    viewer_kind: str
    unread_count: int
    changed: bool


class MessageStore:
    """
    Append-only, ordered message log per conversation.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        unread_counter: UnreadCounter,
        clock: Callable[[], datetime] = get_utc_now,
    ):
        self._session_factory = session_factory
        self._unread = unread_counter
        self._clock = clock

    async def append(
        self,
        conversation_id: str,
        sender_kind: SenderKind,
        sender_ref: Optional[str],
        body: str,
        kind: MessageKind = MessageKind.TEXT,
        file_ref: Optional[FileRef] = None,
    ) -> AppendResult:
        sender_kind = SenderKind(sender_kind)
        kind = MessageKind(kind)
        body = self._validate(sender_kind, sender_ref, body, kind, file_ref)

        async with self._session_factory() as session:
            conversation = await session.get(SupportConversation, conversation_id)
            if conversation is None:
                raise NotFound("Conversation not found")
            if not conversation.is_open:
                raise InvalidState(f"Conversation is {conversation.status}")

            # Server clock is the only source of message time
            now = self._clock()
            message = SupportMessage(
                conversation_id=conversation_id,
                sender_kind=sender_kind.value,
                sender_ref=sender_ref,
                body=body,
                kind=kind.value,
                file_url=file_ref.url if file_ref else None,
                file_name=file_ref.name if file_ref else None,
                file_size=file_ref.size if file_ref else None,
                is_read=False,
                created_at=now,
            )
            session.add(message)
            conversation.last_message_at = now
            await session.commit()
            await session.refresh(message)
            await session.refresh(conversation)

        logger.info(
            "message_appended",
            conversation_id=conversation_id,
            message_id=message.id,
            sender_kind=sender_kind.value,
            kind=kind.value,
        )
        return AppendResult(message=message, conversation=conversation)

    async def get(self, message_id: str) -> SupportMessage:
        async with self._session_factory() as session:
            message = await session.get(SupportMessage, message_id)
        if message is None:
            raise NotFound("Message not found")
        return message

    async def mark_read(self, message_id: str) -> ReadReceipt:
        """
        Idempotent: a message already read keeps its original read_at.
        """
        async with self._session_factory() as session:
            message = await session.get(SupportMessage, message_id)
            if message is None:
                raise NotFound("Message not found")
            conversation = await session.get(SupportConversation, message.conversation_id)

            changed = False
            if not message.is_read:
                result = await session.execute(
                    update(SupportMessage)
                    .where(SupportMessage.id == message_id, SupportMessage.is_read.is_(False))
                    .values(is_read=True, read_at=self._clock())
                )
                await session.commit()
                changed = result.rowcount == 1
                await session.refresh(message)

            viewer_kind = receiver_kind_for(message.sender_kind, conversation.owner_kind)
            unread_count = await self._unread.count(message.conversation_id, viewer_kind, session=session)

        if changed:
            logger.info("message_read", message_id=message_id, conversation_id=message.conversation_id)
        return ReadReceipt(
            message=message,
            conversation_id=message.conversation_id,
            viewer_kind=viewer_kind,
            unread_count=unread_count,
            changed=changed,
        )

    async def list_messages(
        self,
        conversation_id: str,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[SupportMessage], int]:
        """Oldest first."""
        offset = (max(page, 1) - 1) * limit
        async with self._session_factory() as session:
            total = (
                await session.execute(
                    select(func.count(SupportMessage.id)).where(
                        SupportMessage.conversation_id == conversation_id
                    )
                )
            ).scalar_one()
            result = await session.execute(
                select(SupportMessage)
                .where(SupportMessage.conversation_id == conversation_id)
                .order_by(SupportMessage.created_at.asc(), SupportMessage.id.asc())
                .offset(offset)
                .limit(limit)
            )
            messages = list(result.scalars().all())
        return messages, int(total)

    @staticmethod
    def _validate(
        sender_kind: SenderKind,
        sender_ref: Optional[str],
        body: Optional[str],
        kind: MessageKind,
        file_ref: Optional[FileRef],
    ) -> str:
        body = (body or "").strip()
        if sender_kind is SenderKind.SYSTEM:
            if sender_ref is not None:
                raise ValidationFailed("System messages have no sender reference")
        elif not sender_ref:
            raise ValidationFailed("Sender reference is required")

        if kind is MessageKind.FILE:
            if file_ref is None:
                raise ValidationFailed("File messages need an attachment")
        elif file_ref is not None:
            raise ValidationFailed("Only file messages carry attachments")
        if kind is MessageKind.SYSTEM and sender_kind is not SenderKind.SYSTEM:
            raise ValidationFailed("Only the system may post system messages")
        if kind is MessageKind.AUTH_CODE and sender_kind is not SenderKind.OPERATOR:
            raise ValidationFailed("Only operators may post auth codes")

        if not body:
            raise ValidationFailed("Message body is empty")
        if len(body) > MAX_BODY_LENGTH:
            raise ValidationFailed(f"Message body exceeds {MAX_BODY_LENGTH} characters")
        return body
