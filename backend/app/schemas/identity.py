"""
Identity - the tagged union every connection, message and room is keyed on.
"""

from typing import Annotated, FrozenSet, List, Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

from app.core.permissions import OperatorRole, Permission


class TokenPayload(BaseModel):
    sub: str
    type: str
    role: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class AccountIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["account"] = "account"
    id: str

    @property
    def ref(self) -> str:
        return self.id

    @property
    def is_operator(self) -> bool:
        return False


class GuestIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["guest"] = "guest"
    token: str

    @property
    def ref(self) -> str:
        return self.token

    @property
    def is_operator(self) -> bool:
        return False


class OperatorIdentity(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["operator"] = "operator"
    id: str
    role: Optional[OperatorRole] = None
    permissions: FrozenSet[str] = frozenset()

    @property
    def ref(self) -> str:
        return self.id

    @property
    def is_operator(self) -> bool:
        return True

    def has_permission(self, permission: Permission) -> bool:
        if self.role == OperatorRole.SUPER_ADMIN:
            return True
        return permission.value in self.permissions


Identity = Annotated[
    Union[AccountIdentity, GuestIdentity, OperatorIdentity],
    Field(discriminator="kind"),
]

ParticipantIdentity = Union[AccountIdentity, GuestIdentity]


class Resolution(BaseModel):
    """Outcome of resolving a connection's credential."""
    identity: Identity
    minted_guest_token: bool = False
