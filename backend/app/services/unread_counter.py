from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.support_message import SupportMessage, SenderKind


class ViewerKind:
    OPERATOR = "operator"
    ACCOUNT = "account"
    GUEST = "guest"

    ALL = (OPERATOR, ACCOUNT, GUEST)


# What each side counts as "from the other side"
_OPERATOR_COUNTS = (SenderKind.ACCOUNT.value, SenderKind.GUEST.value)
_PARTICIPANT_COUNTS = (SenderKind.OPERATOR.value, SenderKind.SYSTEM.value)


def counted_senders(viewer_kind: str) -> Tuple[str, ...]:
    if viewer_kind == ViewerKind.OPERATOR:
        return _OPERATOR_COUNTS
    if viewer_kind in (ViewerKind.ACCOUNT, ViewerKind.GUEST):
        return _PARTICIPANT_COUNTS
    raise ValueError(f"unknown viewer kind: {viewer_kind}")


def receiver_kind_for(sender_kind: str, owner_kind: str) -> str:
    """The side that should read a message from `sender_kind`."""
    if sender_kind in _OPERATOR_COUNTS:
        return ViewerKind.OPERATOR
    return owner_kind


class UnreadCounter:
    """
    Unread counts derived from the message table on every call.

    There is no stored counter to keep in sync; the only inputs are
    sender_kind and is_read of the messages themselves.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def count(
        self,
        conversation_id: str,
        viewer_kind: str,
        session: Optional[AsyncSession] = None,
    ) -> int:
        stmt = select(func.count(SupportMessage.id)).where(
            SupportMessage.conversation_id == conversation_id,
            SupportMessage.sender_kind.in_(counted_senders(viewer_kind)),
            SupportMessage.is_read.is_(False),
        )
        return await self._scalar(stmt, session)

    async def count_many(
        self,
        conversation_ids: Iterable[str],
        viewer_kind: str,
        session: Optional[AsyncSession] = None,
    ) -> Dict[str, int]:
        ids = list(conversation_ids)
        if not ids:
            return {}
        stmt = (
            select(SupportMessage.conversation_id, func.count(SupportMessage.id))
            .where(
                SupportMessage.conversation_id.in_(ids),
                SupportMessage.sender_kind.in_(counted_senders(viewer_kind)),
                SupportMessage.is_read.is_(False),
            )
            .group_by(SupportMessage.conversation_id)
        )
        if session is not None:
            rows = (await session.execute(stmt)).all()
        else:
            async with self._session_factory() as own:
                rows = (await own.execute(stmt)).all()
        counts = {conversation_id: 0 for conversation_id in ids}
        counts.update({conversation_id: int(n) for conversation_id, n in rows})
        return counts

    async def total_for_operators(self, session: Optional[AsyncSession] = None) -> int:
        """Platform-wide count of participant messages no operator has read."""
        stmt = select(func.count(SupportMessage.id)).where(
            SupportMessage.sender_kind.in_(_OPERATOR_COUNTS),
            SupportMessage.is_read.is_(False),
        )
        return await self._scalar(stmt, session)

    async def _scalar(self, stmt, session: Optional[AsyncSession]) -> int:
        if session is not None:
            return int((await session.execute(stmt)).scalar_one() or 0)
        async with self._session_factory() as own:
            return int((await own.execute(stmt)).scalar_one() or 0)
