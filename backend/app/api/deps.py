from typing import Callable, Optional

from fastapi import Depends, Header, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.exceptions import AuthenticationFailed, PermissionDenied, ValidationFailed
from app.core.permissions import Permission
from app.schemas.identity import AccountIdentity, OperatorIdentity, ParticipantIdentity
from app.services.guest_token import GuestTokenService
from app.services.support_hub import SupportHub

bearer_scheme = HTTPBearer(auto_error=False)


def get_hub(request: Request) -> SupportHub:
    return request.app.state.support_hub


async def get_participant(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_guest_token: Optional[str] = Header(None),
    hub: SupportHub = Depends(get_hub),
) -> ParticipantIdentity:
    """
    Account (bearer) or Guest (X-Guest-Token). Over HTTP a guest token is
    never minted here; POST /support/conversation/guest does that.
    """
    if credentials is None and not GuestTokenService.is_valid(x_guest_token):
        if x_guest_token:
            raise ValidationFailed("Invalid guest token")
        raise AuthenticationFailed("Credential required")

    resolution = hub.resolve(credentials.credentials if credentials else None, x_guest_token)
    identity = resolution.identity
    if isinstance(identity, OperatorIdentity):
        raise PermissionDenied("Use the admin support endpoints")
    return identity


async def get_account(
    identity: ParticipantIdentity = Depends(get_participant),
) -> AccountIdentity:
    if not isinstance(identity, AccountIdentity):
        raise AuthenticationFailed("Account credential required")
    return identity


async def get_operator(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    hub: SupportHub = Depends(get_hub),
) -> OperatorIdentity:
    if credentials is None:
        raise AuthenticationFailed("Credential required")
    identity = hub.resolver.from_bearer(credentials.credentials)
    if identity is None:
        raise AuthenticationFailed("Could not validate credentials")
    if not isinstance(identity, OperatorIdentity):
        raise PermissionDenied("Operator access required")
    return identity


def require_permission(permission: Permission) -> Callable:
    async def checker(operator: OperatorIdentity = Depends(get_operator)) -> OperatorIdentity:
        if not operator.has_permission(permission):
            raise PermissionDenied(f"Missing permission {permission.value}")
        return operator
    return checker
