import math
from typing import Any, Literal, Optional

from fastapi import APIRouter, Depends, Query

from app.api import deps
from app.core.permissions import Permission
from app.models.support_conversation import ConversationStatus, ConversationTopic
from app.schemas.identity import OperatorIdentity
from app.schemas.support import (
    AssignRequest,
    ConversationOut,
    ConversationPage,
    GenerateCodeRequest,
    GeneratedCodeResponse,
    MessageOut,
    MessagePage,
    Pagination,
    PriorityUpdateRequest,
    StatusUpdateRequest,
    UnreadTotal,
)
from app.services.catalogue import STANDARD_MESSAGES
from app.services.support_hub import SupportHub

router = APIRouter()

can_view = deps.require_permission(Permission.SUPPORT_VIEW)
can_manage = deps.require_permission(Permission.SUPPORT_MANAGE)
can_issue_codes = deps.require_permission(Permission.SUPPORT_CODES)


@router.get("/conversations", response_model=ConversationPage)
async def list_conversations(
    status: Optional[Literal["open", "closed", "resolved", "all"]] = None,
    topic: Optional[ConversationTopic] = None,
    account_id: Optional[str] = None,
    guest_token: Optional[str] = None,
    operator_id: Optional[str] = None,
    search: Optional[str] = Query(None, max_length=100),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    operator: OperatorIdentity = Depends(can_view),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    """
    Every conversation, most recently active first, with operator-side unread counts.
    """
    status_filter = None if status in (None, "all") else ConversationStatus(status)
    conversations, total = await hub.conversations.list_all(
        status=status_filter,
        topic=topic,
        account_id=account_id,
        guest_token=guest_token,
        operator_id=operator_id,
        search=search,
        page=page,
        limit=limit,
    )
    return ConversationPage(
        conversations=conversations,
        pagination=Pagination(total=total, page=page, limit=limit, total_pages=math.ceil(total / limit)),
    )


@router.get("/conversations/{conversation_id}", response_model=ConversationOut)
async def get_conversation(
    conversation_id: str,
    operator: OperatorIdentity = Depends(can_view),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    return await hub.get_conversation(operator, conversation_id)


@router.get("/conversations/{conversation_id}/messages", response_model=MessagePage)
async def list_messages(
    conversation_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    operator: OperatorIdentity = Depends(can_view),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    messages, total = await hub.list_messages(operator, conversation_id, page, limit)
    return MessagePage(
        messages=[MessageOut.model_validate(m) for m in messages],
        pagination=Pagination(total=total, page=page, limit=limit, total_pages=math.ceil(total / limit)),
    )


@router.patch("/conversations/{conversation_id}/status", response_model=ConversationOut)
async def update_status(
    conversation_id: str,
    request: StatusUpdateRequest,
    operator: OperatorIdentity = Depends(can_manage),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    """
    open -> closed or open -> resolved. Terminal conversations stay terminal.
    """
    return await hub.set_status(operator, conversation_id, request.status)


@router.patch("/conversations/{conversation_id}/assign", response_model=ConversationOut)
async def assign_conversation(
    conversation_id: str,
    request: AssignRequest,
    operator: OperatorIdentity = Depends(can_manage),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    return await hub.assign(operator, conversation_id, request.operator_id)


@router.patch("/conversations/{conversation_id}/priority", response_model=ConversationOut)
async def update_priority(
    conversation_id: str,
    request: PriorityUpdateRequest,
    operator: OperatorIdentity = Depends(can_manage),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    return await hub.set_priority(operator, conversation_id, request.priority)


@router.post("/onboarding/generate-code", response_model=GeneratedCodeResponse)
async def generate_code(
    request: GenerateCodeRequest,
    operator: OperatorIdentity = Depends(can_issue_codes),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    """
    Issue a single-use code. When bound to a conversation the code is also
    posted into it.
    """
    auth_code = await hub.issue_code(
        operator,
        account_id=request.account_id,
        guest_token=request.guest_token,
        conversation_id=request.conversation_id,
        device_info=request.device_info,
    )
    return GeneratedCodeResponse(
        id=auth_code.id,
        code=auth_code.code,
        expires_at=auth_code.expires_at,
        conversation_id=auth_code.conversation_id,
    )


@router.get("/unread-total", response_model=UnreadTotal)
async def unread_total(
    operator: OperatorIdentity = Depends(can_view),
    hub: SupportHub = Depends(deps.get_hub),
) -> Any:
    return UnreadTotal(total_unread_count=await hub.unread_total(operator))


@router.get("/standard-messages")
async def standard_messages(
    operator: OperatorIdentity = Depends(can_view),
) -> Any:
    return {"messages": STANDARD_MESSAGES}
