from app.models.support_conversation import (
    SupportConversation,
    ConversationTopic,
    ConversationStatus,
    ConversationPriority,
)
from app.models.support_message import SupportMessage, SenderKind, MessageKind
from app.models.auth_code import AuthCode, AuthCodeStatus
