from datetime import timedelta
from typing import Any, Iterable, Optional, Union

from jose import jwt, JWTError
from pydantic import ValidationError

from app.core.config import settings
from app.core.time_utils import get_utc_now
from app.schemas.identity import TokenPayload

ALGORITHM = settings.JWT_ALGORITHM


def create_access_token(
    subject: Union[str, Any],
    kind: str,
    expires_delta: Optional[timedelta] = None,
    role: Optional[str] = None,
    permissions: Optional[Iterable[str]] = None,
) -> str:
    """
    Issue a bearer credential. `kind` is "account" or "operator".
    Accounts and operators are provisioned elsewhere; this is what their
    login flows (and the tests) use to mint tokens the resolver understands.
    """
    if expires_delta:
        expire = get_utc_now() + expires_delta
    else:
        expire = get_utc_now() + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode = {"exp": expire, "sub": str(subject), "type": kind}
    if role:
        to_encode["role"] = role
    if permissions is not None:
        to_encode["permissions"] = sorted(set(permissions))
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: str) -> Optional[TokenPayload]:
    """
    Returns the validated payload, or None for anything that is not a
    well-formed, unexpired token signed with our key.
    """
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        return TokenPayload(**payload)
    except (JWTError, ValidationError):
        return None
