from datetime import datetime
from typing import Callable, List, Optional, Tuple, Union

import structlog
from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import Conflict, InvalidState, NotFound, ValidationFailed
from app.core.locks import KeyedLock
from app.core.time_utils import get_utc_now
from app.models.support_conversation import (
    SupportConversation,
    ConversationTopic,
    ConversationStatus,
    ConversationPriority,
)
from app.schemas.identity import AccountIdentity, GuestIdentity, OperatorIdentity
from app.schemas.support import ConversationOut
from app.services.guest_token import GuestTokenService
from app.services.unread_counter import UnreadCounter, ViewerKind

logger = structlog.get_logger()

Participant = Union[AccountIdentity, GuestIdentity]


class ConversationManager:
    """
    Owns conversation lifecycle: get-or-create of the single open thread per
    (owner, topic), and the open -> closed / open -> resolved transitions.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        unread_counter: UnreadCounter,
        clock: Callable[[], datetime] = get_utc_now,
        list_limit: int = 50,
    ):
        self._session_factory = session_factory
        self._unread = unread_counter
        self._clock = clock
        self._list_limit = list_limit
        self._creation_locks = KeyedLock()

    async def get_or_create_active(
        self,
        identity: Participant,
        topic: ConversationTopic = ConversationTopic.GENERAL,
        subject: Optional[str] = None,
    ) -> Tuple[SupportConversation, bool]:
        """
        Returns (conversation, created). Creation is serialized per
        (owner, topic); the partial unique index backs this up across processes.
        """
        topic = ConversationTopic(topic)
        owner_column = self._owner_column(identity)
        key = (identity.kind, identity.ref, topic.value)

        async with self._creation_locks.hold(key):
            async with self._session_factory() as session:
                existing = await self._find_open(session, owner_column, identity.ref, topic)
                if existing is not None:
                    return existing, False

                now = self._clock()
                conversation = SupportConversation(
                    account_id=identity.id if isinstance(identity, AccountIdentity) else None,
                    guest_token=identity.token if isinstance(identity, GuestIdentity) else None,
                    topic=topic.value,
                    subject=subject,
                    status=ConversationStatus.OPEN.value,
                    priority=ConversationPriority.NORMAL.value,
                    created_at=now,
                    updated_at=now,
                )
                session.add(conversation)
                try:
                    await session.commit()
                except IntegrityError:
                    # Another process won the race; use its row
                    await session.rollback()
                    existing = await self._find_open(session, owner_column, identity.ref, topic)
                    if existing is not None:
                        return existing, False
                    raise Conflict("Could not create conversation, please retry")

                await session.refresh(conversation)

        logger.info(
            "conversation_created",
            conversation_id=conversation.id,
            owner_kind=identity.kind,
            topic=topic.value,
        )
        return conversation, True

    async def get(self, conversation_id: str) -> SupportConversation:
        async with self._session_factory() as session:
            conversation = await session.get(SupportConversation, conversation_id)
        if conversation is None:
            raise NotFound("Conversation not found")
        return conversation

    async def get_owned(self, conversation_id: str, identity: Participant) -> SupportConversation:
        """Like get(), but a conversation owned by someone else is reported as missing."""
        conversation = await self.get(conversation_id)
        if not self.is_owner(conversation, identity):
            raise NotFound("Conversation not found")
        return conversation

    @staticmethod
    def is_owner(conversation: SupportConversation, identity) -> bool:
        if isinstance(identity, AccountIdentity):
            return conversation.account_id == identity.id
        if isinstance(identity, GuestIdentity):
            return conversation.guest_token == identity.token
        return False

    async def set_status(
        self,
        conversation_id: str,
        new_status: ConversationStatus,
        operator_id: Optional[str] = None,
    ) -> SupportConversation:
        new_status = ConversationStatus(new_status)
        if new_status is ConversationStatus.OPEN:
            raise InvalidState("Conversations cannot be reopened")

        async with self._session_factory() as session:
            conversation = await session.get(SupportConversation, conversation_id)
            if conversation is None:
                raise NotFound("Conversation not found")
            if not conversation.is_open:
                raise InvalidState(f"Conversation is already {conversation.status}")

            conversation.status = new_status.value
            if operator_id:
                conversation.operator_id = operator_id
            conversation.updated_at = self._clock()
            await session.commit()
            await session.refresh(conversation)

        logger.info(
            "conversation_status_changed",
            conversation_id=conversation_id,
            status=new_status.value,
            operator_id=operator_id,
        )
        return conversation

    async def assign(self, conversation_id: str, operator_id: str) -> SupportConversation:
        """Allowed in any status."""
        if not operator_id:
            raise ValidationFailed("Operator id is required")
        return await self._update(conversation_id, operator_id=operator_id)

    async def set_priority(
        self, conversation_id: str, priority: ConversationPriority
    ) -> SupportConversation:
        return await self._update(conversation_id, priority=ConversationPriority(priority).value)

    async def list_for_identity(
        self,
        identity: Union[AccountIdentity, GuestIdentity, OperatorIdentity],
        limit: Optional[int] = None,
    ) -> List[ConversationOut]:
        """
        Most recently active first, each with a live unread count from the
        identity's side. For operators: the conversations assigned to them.
        """
        if isinstance(identity, GuestIdentity) and not GuestTokenService.is_valid(identity.token):
            return []
        if isinstance(identity, OperatorIdentity):
            owner_column = SupportConversation.operator_id
        else:
            owner_column = self._owner_column(identity)

        async with self._session_factory() as session:
            result = await session.execute(
                select(SupportConversation)
                .where(owner_column == identity.ref)
                .order_by(*self._activity_order())
                .limit(limit or self._list_limit)
            )
            conversations = list(result.scalars().all())
            counts = await self._unread.count_many(
                [c.id for c in conversations], identity.kind, session=session
            )

        return [self.to_out(c, counts.get(c.id, 0)) for c in conversations]

    async def list_all(
        self,
        status: Optional[ConversationStatus] = None,
        topic: Optional[ConversationTopic] = None,
        account_id: Optional[str] = None,
        guest_token: Optional[str] = None,
        operator_id: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 50,
    ) -> Tuple[List[ConversationOut], int]:
        """Operator view, annotated with operator-side unread counts."""
        filters = []
        if status:
            filters.append(SupportConversation.status == ConversationStatus(status).value)
        if topic:
            filters.append(SupportConversation.topic == ConversationTopic(topic).value)
        if account_id:
            filters.append(SupportConversation.account_id == account_id)
        if guest_token:
            filters.append(SupportConversation.guest_token == guest_token)
        if operator_id:
            filters.append(SupportConversation.operator_id == operator_id)
        if search:
            pattern = f"%{search.strip()}%"
            filters.append(or_(
                SupportConversation.subject.ilike(pattern),
                SupportConversation.account_id.ilike(pattern),
                SupportConversation.guest_token.ilike(pattern),
            ))

        offset = (max(page, 1) - 1) * limit
        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count(SupportConversation.id)).where(*filters))
            ).scalar_one()
            result = await session.execute(
                select(SupportConversation)
                .where(*filters)
                .order_by(*self._activity_order())
                .offset(offset)
                .limit(limit)
            )
            conversations = list(result.scalars().all())
            counts = await self._unread.count_many(
                [c.id for c in conversations], ViewerKind.OPERATOR, session=session
            )

        return [self.to_out(c, counts.get(c.id, 0)) for c in conversations], int(total)

    async def describe(self, conversation: SupportConversation, viewer_kind: str) -> ConversationOut:
        count = await self._unread.count(conversation.id, viewer_kind)
        return self.to_out(conversation, count)

    @staticmethod
    def to_out(conversation: SupportConversation, unread_count: int = 0) -> ConversationOut:
        out = ConversationOut.model_validate(conversation)
        out.unread_count = unread_count
        return out

    async def _update(self, conversation_id: str, **values) -> SupportConversation:
        async with self._session_factory() as session:
            conversation = await session.get(SupportConversation, conversation_id)
            if conversation is None:
                raise NotFound("Conversation not found")
            for field, value in values.items():
                setattr(conversation, field, value)
            conversation.updated_at = self._clock()
            await session.commit()
            await session.refresh(conversation)
        logger.info("conversation_updated", conversation_id=conversation_id, **values)
        return conversation

    @staticmethod
    def _owner_column(identity):
        if isinstance(identity, AccountIdentity):
            return SupportConversation.account_id
        if isinstance(identity, GuestIdentity):
            if not GuestTokenService.is_valid(identity.token):
                raise ValidationFailed("Invalid guest token")
            return SupportConversation.guest_token
        raise ValidationFailed("Only accounts and guests own conversations")

    @staticmethod
    def _activity_order():
        return (
            func.coalesce(SupportConversation.last_message_at, SupportConversation.created_at).desc(),
            SupportConversation.created_at.desc(),
        )

    @staticmethod
    async def _find_open(
        session: AsyncSession, owner_column, owner_ref: str, topic: ConversationTopic
    ) -> Optional[SupportConversation]:
        result = await session.execute(
            select(SupportConversation)
            .where(
                owner_column == owner_ref,
                SupportConversation.topic == topic.value,
                SupportConversation.status == ConversationStatus.OPEN.value,
            )
            .order_by(SupportConversation.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()
