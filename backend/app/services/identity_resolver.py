from typing import Optional, Union

import structlog

from app.core.exceptions import AuthenticationFailed
from app.core.permissions import OperatorRole
from app.core.security import decode_access_token
from app.schemas.identity import (
    AccountIdentity,
    GuestIdentity,
    OperatorIdentity,
    Resolution,
)
from app.services.guest_token import GuestTokenService

logger = structlog.get_logger()

# Token "type" claims issued by the account and staff login flows
ACCOUNT_TOKEN_TYPES = {"account", "user"}
OPERATOR_TOKEN_TYPES = {"operator", "admin"}


def strip_bearer(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    value = value.strip()
    if value.lower().startswith("bearer "):
        value = value[7:].strip()
    return value or None


class IdentityResolver:
    """
    Classifies a connection as Account, Operator or Guest.

    A bearer credential that fails validation is never silently turned into
    a brand-new guest: without a usable guest token the connection is rejected.
    """

    def resolve(self, bearer: Optional[str] = None, guest_token: Optional[str] = None) -> Resolution:
        bearer = strip_bearer(bearer)
        guest_token = guest_token.strip() if guest_token else None
        has_guest = GuestTokenService.is_valid(guest_token)

        if bearer:
            identity = self.from_bearer(bearer)
            if identity is not None:
                return Resolution(identity=identity)
            if has_guest:
                logger.info("bearer_rejected_guest_fallback")
                return Resolution(identity=GuestIdentity(token=guest_token))
            logger.warning("bearer_rejected")
            raise AuthenticationFailed("Invalid or expired credential")

        if has_guest:
            return Resolution(identity=GuestIdentity(token=guest_token))

        return Resolution(
            identity=GuestIdentity(token=GuestTokenService.generate()),
            minted_guest_token=True,
        )

    def from_bearer(self, token: str) -> Optional[Union[AccountIdentity, OperatorIdentity]]:
        payload = decode_access_token(token)
        if payload is None or not payload.sub:
            return None
        token_type = payload.type.lower()
        if token_type in ACCOUNT_TOKEN_TYPES:
            return AccountIdentity(id=payload.sub)
        if token_type in OPERATOR_TOKEN_TYPES:
            return OperatorIdentity(
                id=payload.sub,
                role=self._role(payload.role),
                permissions=frozenset(payload.permissions),
            )
        return None

    @staticmethod
    def _role(value: Optional[str]) -> Optional[OperatorRole]:
        if not value:
            return None
        try:
            return OperatorRole(value.upper())
        except ValueError:
            return None
