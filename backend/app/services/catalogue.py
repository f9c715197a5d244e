"""
Static support content: topic choices for the widget and canned replies
for operators.
"""

from app.models.support_conversation import ConversationTopic

CONVERSATION_OPTIONS = [
    {
        "id": "onboarding",
        "title": "I need help with onboarding",
        "description": "Set up your account and link it with a verification code",
        "topic": ConversationTopic.ONBOARDING.value,
    },
    {
        "id": "call-request",
        "title": "I'd like a call back",
        "description": "Ask an operator to call you",
        "topic": ConversationTopic.CALL_REQUEST.value,
    },
    {
        "id": "payout",
        "title": "I need help with a payout",
        "description": "Check status or get help with withdrawals",
        "topic": ConversationTopic.GENERAL.value,
    },
    {
        "id": "other",
        "title": "Other - General Support",
        "description": "Any other questions or issues",
        "topic": ConversationTopic.GENERAL.value,
    },
]

OPTIONS_NOTE = (
    "Choosing an option is optional. Sending a message without one starts "
    'a conversation with topic "general".'
)

STANDARD_MESSAGES = {
    "welcome": {
        "onboarding": "Hello! I'm here to help you complete your onboarding.",
        "general": "Hello! How can I help you today?",
        "call_request": "Hello! Share a good time and number and we'll call you back.",
    },
    "onboarding": {
        "code_sent": "Here is your verification code. It is valid for 15 minutes and can be used once.",
        "code_expired": "That code has expired. I'll send you a new one.",
        "done": "Your account is now linked. Is there anything else you need help with?",
    },
    "payout": {
        "pending": "Your withdrawal request is being processed. You'll be notified once it completes.",
        "completed": "Your withdrawal has been completed successfully!",
        "rejected": "Your withdrawal request was rejected. Reply here and we'll look into it.",
    },
    "other": {
        "greeting": "Hello! What can I assist you with today?",
        "closing": "Is there anything else I can help you with?",
    },
}
