import asyncio
from typing import Iterable, Optional, Set

import structlog

from app.core.permissions import Permission
from app.models.support_conversation import SupportConversation
from app.models.support_message import SupportMessage, SenderKind
from app.schemas.events import (
    STAFF_ONLY_EVENTS,
    ConversationUpdated,
    MessageRead,
    MessageReadData,
    MessageReceived,
    NewActivity,
    OutboundEvent,
    NewActivityData,
    TypingData,
    TypingStarted,
    TypingStopped,
    UnreadCount,
    UnreadCountData,
    preview_of,
)
from app.schemas.identity import OperatorIdentity
from app.schemas.support import ConversationOut, MessageOut
from app.services.message_store import ReadReceipt
from app.services.operator_directory import OperatorDirectory
from app.services.presence import Connection, PresenceRegistry
from app.services.rooms import OPERATOR_POOL, conversation_room, identity_room, operator_room
from app.services.unread_counter import UnreadCounter, ViewerKind, receiver_kind_for

logger = structlog.get_logger()

_PARTICIPANT_SENDERS = (SenderKind.ACCOUNT.value, SenderKind.GUEST.value)


def can_see_staff_events(connection: Connection) -> bool:
    identity = connection.identity
    return isinstance(identity, OperatorIdentity) and identity.has_permission(Permission.SUPPORT_VIEW)


class BroadcastRouter:
    """
    Fans events out to rooms. Callers invoke it only after the write being
    reported has committed; per-conversation ordering is the caller's lock.
    """

    def __init__(
        self,
        presence: PresenceRegistry,
        unread_counter: UnreadCounter,
        operator_directory: Optional[OperatorDirectory] = None,
    ):
        self._presence = presence
        self._unread = unread_counter
        self._directory = operator_directory
        self._background: Set[asyncio.Task] = set()

    async def emit(self, room: str, event: OutboundEvent, exclude: Optional[str] = None) -> int:
        return await self.emit_to([room], event, exclude)

    async def emit_to(self, rooms: Iterable[str], event: OutboundEvent, exclude: Optional[str] = None) -> int:
        """Delivers once per connection, however many of the rooms it is in."""
        staff_only = isinstance(event, STAFF_ONLY_EVENTS)
        seen: Set[str] = set()
        delivered = 0
        for room in rooms:
            for connection in await self._presence.members(room):
                if connection.id == exclude or connection.id in seen:
                    continue
                seen.add(connection.id)
                if staff_only and not can_see_staff_events(connection):
                    continue
                if connection.deliver(event):
                    delivered += 1
        return delivered

    async def message_appended(
        self,
        conversation: SupportConversation,
        message: SupportMessage,
        new_conversation: bool = False,
    ) -> None:
        room = conversation_room(conversation.id)
        await self.emit(room, MessageReceived(data=MessageOut.model_validate(message)))

        if message.sender_kind in _PARTICIPANT_SENDERS:
            await self.emit(OPERATOR_POOL, NewActivity(data=NewActivityData(
                conversation_id=conversation.id,
                message_id=message.id,
                preview=preview_of(message.body),
                sender_kind=message.sender_kind,
                topic=conversation.topic,
                new_conversation=new_conversation,
            )))
            if self._directory is not None and self._directory.enabled:
                self._schedule(self._notify_offline_operators(conversation, message))

        receiver = receiver_kind_for(message.sender_kind, conversation.owner_kind)
        await self.emit_unread(conversation.id, receiver)

    async def message_read(self, receipt: ReadReceipt) -> None:
        room = conversation_room(receipt.conversation_id)
        await self.emit(room, MessageRead(data=MessageReadData(
            message_id=receipt.message.id,
            conversation_id=receipt.conversation_id,
            read_at=receipt.message.read_at,
        )))
        await self.emit_unread(receipt.conversation_id, receipt.viewer_kind, count=receipt.unread_count)

    async def emit_unread(self, conversation_id: str, viewer_kind: str, count: Optional[int] = None) -> None:
        if count is None:
            count = await self._unread.count(conversation_id, viewer_kind)
        data = UnreadCountData(conversation_id=conversation_id, count=count, viewer_kind=viewer_kind)
        await self.emit(conversation_room(conversation_id), UnreadCount(data=data))

        if viewer_kind == ViewerKind.OPERATOR:
            total = await self._unread.total_for_operators()
            await self.emit(OPERATOR_POOL, UnreadCount(data=data.model_copy(update={"total_unread_count": total})))

    async def typing(self, connection: Connection, conversation_id: str, started: bool) -> None:
        """Best effort, not persisted, never echoed to the sender."""
        identity = connection.identity
        data = TypingData(
            conversation_id=conversation_id,
            sender_kind=identity.kind,
            sender_ref=identity.ref,
        )
        event = TypingStarted(data=data) if started else TypingStopped(data=data)
        await self.emit(conversation_room(conversation_id), event, exclude=connection.id)

    async def conversation_updated(self, conversation: ConversationOut) -> None:
        """
        Reaches the owner on every device, even one that left the room, and
        the assigned operator, even without the support queue.
        """
        rooms = [
            conversation_room(conversation.id),
            OPERATOR_POOL,
            identity_room(conversation.account_id or conversation.guest_token),
        ]
        if conversation.operator_id:
            rooms.append(operator_room(conversation.operator_id))
        await self.emit_to(rooms, ConversationUpdated(data=conversation))

    async def _notify_offline_operators(self, conversation: SupportConversation, message: SupportMessage) -> None:
        try:
            active = set(await self._directory.list_active_operator_ids())
            offline = active - await self._presence.online_operator_ids()
            await self._directory.push(offline, {
                "type": "support.new_activity",
                "conversation_id": conversation.id,
                "preview": preview_of(message.body, limit=80),
            })
        except Exception as e:
            logger.warning("operator_push_failed", conversation_id=conversation.id, error=str(e))

    def _schedule(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for pending background notifications (shutdown, tests)."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
