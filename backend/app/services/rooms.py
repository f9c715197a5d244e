"""
Broadcast room names.
"""

OPERATOR_POOL = "operators:pool"


def conversation_room(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


def identity_room(ref: str) -> str:
    """A single account's or guest's own channel, across devices."""
    return f"identity:{ref}"


def operator_room(operator_id: str) -> str:
    return f"operator:{operator_id}"
