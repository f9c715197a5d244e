from datetime import datetime
from typing import Callable, List, Optional, Tuple

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.core.exceptions import InvalidState, PermissionDenied, ValidationFailed
from app.core.locks import KeyedLock
from app.core.permissions import Permission
from app.core.time_utils import get_utc_now
from app.models.auth_code import AuthCode
from app.models.support_conversation import (
    ConversationPriority,
    ConversationStatus,
    ConversationTopic,
    SupportConversation,
)
from app.models.support_message import MessageKind, SenderKind, SupportMessage
from app.schemas.events import ConnectOk, ConnectOkData, ConversationJoined, ConversationLeft, ConversationRef
from app.schemas.identity import GuestIdentity, Identity, OperatorIdentity, Resolution
from app.schemas.support import ConversationOut, FileRef
from app.services.auth_codes import AuthCodeService
from app.services.broadcast import BroadcastRouter
from app.services.conversation_manager import ConversationManager
from app.services.identity_resolver import IdentityResolver
from app.services.message_store import MessageStore, ReadReceipt
from app.services.operator_directory import OperatorDirectory
from app.services.presence import Connection, Departure, PresenceRegistry
from app.services.rooms import OPERATOR_POOL, conversation_room, identity_room, operator_room
from app.services.storage_service import StorageService
from app.services.unread_counter import UnreadCounter, ViewerKind, receiver_kind_for

logger = structlog.get_logger()

ATTACHMENT_CAPTION = "📎 Image attachment"


class SupportHub:
    """
    Entry point for every support operation, socket or HTTP.

    Writes follow one path: resolve identity, ensure the conversation,
    append, recount, fan out. Append and fan-out for one conversation run
    under that conversation's lock, so subscribers see messages in the
    order they were stored.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = get_utc_now,
        storage: Optional[StorageService] = None,
        operator_directory: Optional[OperatorDirectory] = None,
        auth_codes: Optional[AuthCodeService] = None,
    ):
        self.unread = UnreadCounter(session_factory)
        self.conversations = ConversationManager(
            session_factory, self.unread, clock, list_limit=settings.CONVERSATION_LIST_LIMIT
        )
        self.messages = MessageStore(session_factory, self.unread, clock)
        self.presence = PresenceRegistry()
        self.broadcast = BroadcastRouter(self.presence, self.unread, operator_directory)
        self.codes = auth_codes or AuthCodeService(session_factory, clock)
        self.resolver = IdentityResolver()
        self.storage = storage or StorageService()
        self._append_locks = KeyedLock()

    # ------------------------------------------------------------ connections

    def resolve(self, bearer: Optional[str] = None, guest_token: Optional[str] = None) -> Resolution:
        return self.resolver.resolve(bearer, guest_token)

    async def attach(self, connection: Connection, resolution: Resolution) -> ConnectOk:
        """
        Registers the connection and joins its standing rooms. connect:ok is
        queued before any room join so it is always the first frame out.
        """
        identity = connection.identity
        ok = ConnectOk(data=ConnectOkData(
            connection_id=connection.id,
            kind=identity.kind,
            id=identity.ref,
            guest_token=identity.token if isinstance(identity, GuestIdentity) else None,
            minted_guest_token=resolution.minted_guest_token,
        ))
        await self.presence.register(connection)
        connection.deliver(ok)

        if isinstance(identity, OperatorIdentity):
            await self.presence.join(connection.id, operator_room(identity.id))
            if identity.has_permission(Permission.SUPPORT_VIEW):
                await self.presence.join(connection.id, OPERATOR_POOL)
        else:
            await self.presence.join(connection.id, identity_room(identity.ref))
            for conversation in await self.conversations.list_for_identity(identity):
                if conversation.status == ConversationStatus.OPEN:
                    await self.presence.join(connection.id, conversation_room(conversation.id))

        logger.info(
            "connection_opened",
            connection_id=connection.id,
            identity_kind=identity.kind,
            minted_guest_token=resolution.minted_guest_token,
        )
        return ok

    async def detach(self, connection_id: str) -> Optional[Departure]:
        departure = await self.presence.unregister(connection_id)
        if departure is not None:
            logger.info("connection_closed", connection_id=connection_id, went_offline=departure.went_offline)
        return departure

    async def join(self, connection: Connection, conversation_id: str) -> ConversationJoined:
        await self._check_access(connection.identity, conversation_id, Permission.SUPPORT_VIEW)
        await self.presence.join(connection.id, conversation_room(conversation_id))
        return ConversationJoined(data=ConversationRef(conversation_id=conversation_id))

    async def leave(self, connection: Connection, conversation_id: str) -> ConversationLeft:
        await self.presence.leave(connection.id, conversation_room(conversation_id))
        return ConversationLeft(data=ConversationRef(conversation_id=conversation_id))

    # ------------------------------------------------------------ messages

    async def send_message(
        self,
        identity: Identity,
        body: str,
        conversation_id: Optional[str] = None,
        kind: MessageKind = MessageKind.TEXT,
        topic: ConversationTopic = ConversationTopic.GENERAL,
        file_ref: Optional[FileRef] = None,
    ) -> SupportMessage:
        kind = MessageKind(kind)
        if isinstance(identity, OperatorIdentity):
            return await self._operator_send(identity, body, conversation_id, kind, file_ref)

        if kind not in (MessageKind.TEXT, MessageKind.FILE):
            raise ValidationFailed(f"Participants cannot send {kind.value} messages")

        created = False
        if conversation_id:
            conversation = await self.conversations.get_owned(conversation_id, identity)
            if not conversation.is_open:
                # A closed thread is never reopened; continue in a fresh one
                conversation, created = await self.conversations.get_or_create_active(
                    identity, ConversationTopic(conversation.topic)
                )
        else:
            conversation, created = await self.conversations.get_or_create_active(identity, topic)

        if created:
            await self._join_owner(identity, conversation.id)

        return await self._append_and_broadcast(
            conversation.id, SenderKind(identity.kind), identity.ref, body, kind, file_ref,
            new_conversation=created,
        )

    async def _operator_send(
        self,
        operator: OperatorIdentity,
        body: str,
        conversation_id: Optional[str],
        kind: MessageKind,
        file_ref: Optional[FileRef],
    ) -> SupportMessage:
        self._require(operator, Permission.SUPPORT_REPLY)
        if not conversation_id:
            raise ValidationFailed("Operators must name a conversation")
        if kind is MessageKind.SYSTEM:
            raise ValidationFailed("Operators cannot send system messages")
        return await self._append_and_broadcast(
            conversation_id, SenderKind.OPERATOR, operator.id, body, kind, file_ref
        )

    async def upload_and_send(
        self,
        identity: Identity,
        conversation_id: str,
        content: bytes,
        filename: str,
        content_type: Optional[str],
        caption: Optional[str] = None,
    ) -> SupportMessage:
        # Check access before anything touches the disk
        if isinstance(identity, OperatorIdentity):
            self._require(identity, Permission.SUPPORT_REPLY)
            await self.conversations.get(conversation_id)
        else:
            await self.conversations.get_owned(conversation_id, identity)

        file_ref = await self.storage.store(content, filename, content_type)
        return await self.send_message(
            identity,
            (caption or "").strip() or ATTACHMENT_CAPTION,
            conversation_id=conversation_id,
            kind=MessageKind.FILE,
            file_ref=file_ref,
        )

    async def mark_read(self, identity: Identity, message_id: str) -> ReadReceipt:
        message = await self.messages.get(message_id)
        conversation = await self._check_access(identity, message.conversation_id, Permission.SUPPORT_VIEW)
        if receiver_kind_for(message.sender_kind, conversation.owner_kind) != identity.kind:
            raise InvalidState("Messages are marked read by the receiving side")

        async with self._append_locks.hold(conversation.id):
            receipt = await self.messages.mark_read(message_id)
            if receipt.changed:
                await self.broadcast.message_read(receipt)
        return receipt

    async def typing(self, connection: Connection, conversation_id: str, started: bool) -> None:
        await self._check_access(connection.identity, conversation_id, Permission.SUPPORT_VIEW)
        await self.broadcast.typing(connection, conversation_id, started)

    async def list_messages(
        self, identity: Identity, conversation_id: str, page: int = 1, limit: int = 50
    ) -> Tuple[List[SupportMessage], int]:
        await self._check_access(identity, conversation_id, Permission.SUPPORT_VIEW)
        limit = max(1, min(limit, settings.MESSAGE_PAGE_MAX))
        return await self.messages.list_messages(conversation_id, page, limit)

    async def get_conversation(self, identity: Identity, conversation_id: str) -> ConversationOut:
        conversation = await self._check_access(identity, conversation_id, Permission.SUPPORT_VIEW)
        return await self.conversations.describe(conversation, identity.kind)

    # ------------------------------------------------------------ operator actions

    async def set_status(
        self, operator: OperatorIdentity, conversation_id: str, status: ConversationStatus
    ) -> ConversationOut:
        self._require(operator, Permission.SUPPORT_MANAGE)
        conversation = await self.conversations.set_status(conversation_id, status, operator.id)
        return await self._announce(conversation)

    async def assign(
        self, operator: OperatorIdentity, conversation_id: str, operator_id: Optional[str] = None
    ) -> ConversationOut:
        self._require(operator, Permission.SUPPORT_MANAGE)
        conversation = await self.conversations.assign(conversation_id, operator_id or operator.id)
        return await self._announce(conversation)

    async def set_priority(
        self, operator: OperatorIdentity, conversation_id: str, priority: ConversationPriority
    ) -> ConversationOut:
        self._require(operator, Permission.SUPPORT_MANAGE)
        conversation = await self.conversations.set_priority(conversation_id, priority)
        return await self._announce(conversation)

    async def issue_code(
        self,
        operator: OperatorIdentity,
        account_id: Optional[str] = None,
        guest_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> AuthCode:
        self._require(operator, Permission.SUPPORT_CODES)
        auth_code = await self.codes.issue(
            operator.id,
            account_id=account_id,
            guest_token=guest_token,
            conversation_id=conversation_id,
            device_info=device_info,
        )
        if conversation_id:
            conversation = await self.conversations.get(conversation_id)
            if conversation.is_open:
                await self._append_and_broadcast(
                    conversation_id, SenderKind.OPERATOR, operator.id,
                    auth_code.code, MessageKind.AUTH_CODE, None,
                )
            else:
                logger.info("auth_code_not_posted", conversation_id=conversation_id, status=conversation.status)
        return auth_code

    async def verify_code(
        self, code: str, account_id: Optional[str] = None, guest_token: Optional[str] = None
    ) -> Optional[AuthCode]:
        return await self.codes.verify(code, account_id=account_id, guest_token=guest_token)

    async def unread_total(self, operator: OperatorIdentity) -> int:
        self._require(operator, Permission.SUPPORT_VIEW)
        return await self.unread.total_for_operators()

    async def shutdown(self) -> None:
        await self.broadcast.drain()

    # ------------------------------------------------------------ internals

    async def _append_and_broadcast(
        self,
        conversation_id: str,
        sender_kind: SenderKind,
        sender_ref: Optional[str],
        body: str,
        kind: MessageKind,
        file_ref: Optional[FileRef],
        new_conversation: bool = False,
    ) -> SupportMessage:
        async with self._append_locks.hold(conversation_id):
            result = await self.messages.append(conversation_id, sender_kind, sender_ref, body, kind, file_ref)
            await self.broadcast.message_appended(result.conversation, result.message, new_conversation)
        return result.message

    async def _join_owner(self, identity: Identity, conversation_id: str) -> None:
        room = conversation_room(conversation_id)
        for connection in await self.presence.connections_for(identity):
            await self.presence.join(connection.id, room)

    async def _announce(self, conversation: SupportConversation) -> ConversationOut:
        out = await self.conversations.describe(conversation, ViewerKind.OPERATOR)
        await self.broadcast.conversation_updated(out)
        return out

    async def _check_access(
        self, identity: Identity, conversation_id: str, permission: Permission
    ) -> SupportConversation:
        if isinstance(identity, OperatorIdentity):
            self._require(identity, permission)
            return await self.conversations.get(conversation_id)
        return await self.conversations.get_owned(conversation_id, identity)

    @staticmethod
    def _require(identity: Identity, permission: Permission) -> None:
        if not isinstance(identity, OperatorIdentity):
            raise PermissionDenied("Operator access required")
        if not identity.has_permission(permission):
            logger.warning("permission_denied", operator_id=identity.id, permission=permission.value)
            raise PermissionDenied(f"Missing permission {permission.value}")
