"""
Support chat socket.

One socket per client. Frames are {"event": ..., "data": {...}} in both
directions. Outbound frames go through a bounded per-connection queue that
a dedicated writer task drains, so one slow client never holds up fan-out.
"""

import asyncio
import uuid
from typing import Optional

import structlog
from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from app.core.config import settings
from app.core.exceptions import AuthenticationFailed, SupportError, ValidationFailed
from app.schemas.events import (
    ConnectError,
    ConversationJoinIn,
    ConversationLeaveIn,
    ErrorData,
    ErrorEvent,
    MessageReadIn,
    MessageSendIn,
    MessageSent,
    OutboundEvent,
    TypingStartIn,
    TypingStopIn,
    inbound_event_adapter,
)
from app.schemas.identity import Identity
from app.schemas.support import MessageOut
from app.services.support_hub import SupportHub

logger = structlog.get_logger()

router = APIRouter()

WS_CLOSE_AUTH_FAILED = 4401
WS_CLOSE_TRY_AGAIN_LATER = 1013

_CLOSE = object()


class WebSocketConnection:
    """Presence-registry view of one socket."""

    def __init__(self, websocket: WebSocket, identity: Identity, queue_size: int = 256):
        self.id = uuid.uuid4().hex
        self.identity = identity
        self.websocket = websocket
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=queue_size)
        self._writer: Optional[asyncio.Task] = None
        self.closed = False

    def start(self) -> None:
        if not self.closed and self._writer is None:
            self._writer = asyncio.create_task(self._drain())

    def deliver(self, event: OutboundEvent) -> bool:
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("outbound_queue_overflow", connection_id=self.id)
            self.abort()
            return False
        return True

    def abort(self) -> None:
        """Drop the client; it is expected to reconnect and catch up over HTTP."""
        if self.closed:
            return
        self.closed = True
        if self._writer is not None:
            self._writer.cancel()
        asyncio.create_task(self._close(WS_CLOSE_TRY_AGAIN_LATER))

    async def stop(self) -> None:
        """Flush what is queued, then stop the writer."""
        if self._writer is None:
            return
        if not self.closed:
            self.closed = True
            try:
                self._queue.put_nowait(_CLOSE)
            except asyncio.QueueFull:
                self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass

    async def _drain(self) -> None:
        while True:
            event = await self._queue.get()
            if event is _CLOSE:
                return
            try:
                await self.websocket.send_text(event.model_dump_json())
            except (WebSocketDisconnect, RuntimeError, OSError):
                # Peer went away; the reader loop will clean up
                return

    async def _close(self, code: int) -> None:
        try:
            await self.websocket.close(code=code)
        except RuntimeError:
            pass


def _hub(websocket: WebSocket) -> SupportHub:
    return websocket.app.state.support_hub


@router.websocket("/support")
async def support_socket(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    guest_token: Optional[str] = Query(None),
):
    hub = _hub(websocket)
    await websocket.accept()

    bearer = token or websocket.headers.get("authorization")
    guest_token = guest_token or websocket.headers.get("x-guest-token")
    try:
        resolution = hub.resolve(bearer, guest_token)
    except AuthenticationFailed as e:
        await websocket.send_text(
            ConnectError(data=ErrorData(code=e.code, message=e.message)).model_dump_json()
        )
        await websocket.close(code=WS_CLOSE_AUTH_FAILED)
        return

    connection = WebSocketConnection(websocket, resolution.identity, settings.OUTBOUND_QUEUE_SIZE)
    try:
        await hub.attach(connection, resolution)
        # Writer starts once attach is done: connect:ok means rooms are joined
        connection.start()
        while not connection.closed:
            raw = await websocket.receive_text()
            await handle_frame(hub, connection, raw)
    except WebSocketDisconnect:
        pass
    except RuntimeError as e:
        # Socket already closed from our side (overflow)
        logger.info("socket_receive_stopped", connection_id=connection.id, error=str(e))
    finally:
        await hub.detach(connection.id)
        await connection.stop()


async def handle_frame(hub: SupportHub, connection: WebSocketConnection, raw: str) -> None:
    try:
        frame = inbound_event_adapter.validate_json(raw)
    except ValidationError:
        connection.deliver(ErrorEvent(data=ErrorData(
            code=ValidationFailed.code,
            message="Malformed or unknown event",
        )))
        return

    try:
        reply = await dispatch(hub, connection, frame)
    except SupportError as e:
        connection.deliver(ErrorEvent(data=ErrorData(code=e.code, message=e.message, request_event=frame.event)))
        return
    except Exception as e:
        logger.error("socket_event_failed", connection_id=connection.id, event=frame.event, error=str(e))
        connection.deliver(ErrorEvent(data=ErrorData(
            code="INTERNAL_ERROR",
            message="The operation failed, please retry",
            request_event=frame.event,
        )))
        return

    if reply is not None:
        connection.deliver(reply)


async def dispatch(hub: SupportHub, connection: WebSocketConnection, frame):
    identity = connection.identity

    if isinstance(frame, ConversationJoinIn):
        return await hub.join(connection, frame.data.conversation_id)
    if isinstance(frame, ConversationLeaveIn):
        return await hub.leave(connection, frame.data.conversation_id)
    if isinstance(frame, MessageSendIn):
        data = frame.data
        # Acked even when this socket is not in the conversation room
        message = await hub.send_message(
            identity,
            data.body,
            conversation_id=data.conversation_id,
            kind=data.kind,
            topic=data.topic,
        )
        return MessageSent(data=MessageOut.model_validate(message))
    if isinstance(frame, MessageReadIn):
        await hub.mark_read(identity, frame.data.message_id)
        return None
    if isinstance(frame, (TypingStartIn, TypingStopIn)):
        await hub.typing(connection, frame.data.conversation_id, started=isinstance(frame, TypingStartIn))
        return None
    raise ValidationFailed(f"Unsupported event {frame.event}")
