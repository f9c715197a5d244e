"""
Support API for account holders and guests.

Accounts authenticate with a bearer token, guests with X-Guest-Token.
Everything written here is broadcast exactly like a socket message.
"""

import math
from typing import Any, List

import structlog
from fastapi import APIRouter, Depends, File, Form, Query, UploadFile

from app.api import deps
from app.core.config import settings
from app.models.support_conversation import ConversationTopic
from app.schemas.identity import AccountIdentity, GuestIdentity, ParticipantIdentity
from app.schemas.support import (
    ConversationOut,
    GuestConversationRequest,
    GuestConversationResponse,
    MessageOut,
    MessagePage,
    Pagination,
    VerifiedCode,
    VerifyCodeRequest,
    VerifyCodeResponse,
)
from app.services.catalogue import CONVERSATION_OPTIONS, OPTIONS_NOTE
from app.services.guest_token import GuestTokenService
from app.services.support_hub import SupportHub
from app.services.unread_counter import ViewerKind

logger = structlog.get_logger()

router = APIRouter()


def paginate(total: int, page: int, limit: int) -> Pagination:
    return Pagination(total=total, page=page, limit=limit, total_pages=math.ceil(total / limit) if limit else 0)


@router.get("/conversation", response_model=ConversationOut)
async def get_or_create_conversation(
    topic: ConversationTopic = ConversationTopic.GENERAL,
    account: AccountIdentity = Depends(deps.get_account),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    """
    The account's open conversation for the topic, created if none is open.
    """
    conversation, _ = await hub.conversations.get_or_create_active(account, topic)
    return await hub.conversations.describe(conversation, ViewerKind.ACCOUNT)


@router.post("/conversation/guest", response_model=GuestConversationResponse)
async def get_or_create_guest_conversation(
    request: GuestConversationRequest,
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    """
    Guest entry point. A missing or malformed token is replaced with a new
    one, which the client must keep and present from then on.
    """
    token = request.guest_token
    if not GuestTokenService.is_valid(token):
        token = GuestTokenService.generate()
        logger.info("guest_token_minted")

    guest = GuestIdentity(token=token)
    conversation, _ = await hub.conversations.get_or_create_active(guest, request.topic, request.subject)
    return GuestConversationResponse(
        guest_token=token,
        conversation=await hub.conversations.describe(conversation, ViewerKind.GUEST),
    )


@router.get("/conversations", response_model=List[ConversationOut])
async def list_conversations(
    identity: ParticipantIdentity = Depends(deps.get_participant),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    return await hub.conversations.list_for_identity(identity)


@router.get("/conversation-options")
async def get_conversation_options() -> Any:
    return {"options": CONVERSATION_OPTIONS, "note": OPTIONS_NOTE}


@router.get("/conversation/{conversation_id}", response_model=ConversationOut)
async def get_conversation(
    conversation_id: str,
    identity: ParticipantIdentity = Depends(deps.get_participant),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    return await hub.get_conversation(identity, conversation_id)


@router.get("/conversation/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1),
    identity: ParticipantIdentity = Depends(deps.get_participant),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    """
    Oldest first. limit is capped server side.
    """
    limit = min(limit, settings.MESSAGE_PAGE_MAX)
    messages, total = await hub.list_messages(identity, conversation_id, page, limit)
    return MessagePage(
        messages=[MessageOut.model_validate(m) for m in messages],
        pagination=paginate(total, page, limit),
    )


@router.post("/conversation/{conversation_id}/upload", response_model=MessageOut)
async def upload_attachment(
    conversation_id: str,
    file: UploadFile = File(...),
    caption: str = Form(""),
    identity: ParticipantIdentity = Depends(deps.get_participant),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    # One byte past the cap is enough for the size check to reject it
    content = await file.read(hub.storage.max_bytes + 1)
    message = await hub.upload_and_send(
        identity,
        conversation_id,
        content,
        file.filename or "",
        file.content_type,
        caption=caption,
    )
    return MessageOut.model_validate(message)


@router.post("/onboarding/verify-code", response_model=VerifyCodeResponse)
async def verify_code(
    request: VerifyCodeRequest,
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    """
    Consumes a hand-off code. Every failure gets the same answer.
    """
    auth_code = await hub.verify_code(request.code, request.account_id, request.guest_token)
    if auth_code is None:
        return VerifyCodeResponse(success=False, message="Invalid or expired code")
    return VerifyCodeResponse(
        success=True,
        message="Code verified",
        data=VerifiedCode(
            auth_code_id=auth_code.id,
            operator_id=auth_code.operator_id,
            account_id=auth_code.account_id,
            guest_token=auth_code.guest_token,
            conversation_id=auth_code.conversation_id,
        ),
    )
