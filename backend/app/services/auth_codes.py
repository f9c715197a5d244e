import re
import secrets
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.core.config import settings
from app.core.exceptions import Exhausted, NotFound, ValidationFailed
from app.core.logging import mask_secret
from app.core.time_utils import get_utc_now
from app.models.auth_code import AuthCode, AuthCodeStatus
from app.models.support_conversation import SupportConversation
from app.services.guest_token import GuestTokenService

logger = structlog.get_logger()


class AuthCodeService:
    """
    Issues and verifies single-use numeric hand-off codes.

    Expiry is discovered lazily on verification (now >= expires_at means
    expired); there is no sweeper. Verification answers only valid/invalid.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker,
        clock: Callable[[], datetime] = get_utc_now,
        length: Optional[int] = None,
        ttl_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
        generator: Optional[Callable[[int], str]] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.length = length or settings.AUTH_CODE_LENGTH
        self.ttl = timedelta(minutes=ttl_minutes or settings.AUTH_CODE_TTL_MINUTES)
        self.max_attempts = max_attempts or settings.AUTH_CODE_MAX_ATTEMPTS
        self._generate = generator or self.generate_code
        self._pattern = re.compile(rf"\d{{{self.length}}}")

    @staticmethod
    def generate_code(length: int) -> str:
        """Fixed-length numeric code without a leading zero."""
        low = 10 ** (length - 1)
        return str(low + secrets.randbelow(9 * low))

    async def issue(
        self,
        operator_id: str,
        account_id: Optional[str] = None,
        guest_token: Optional[str] = None,
        conversation_id: Optional[str] = None,
        device_info: Optional[str] = None,
    ) -> AuthCode:
        if not operator_id:
            raise ValidationFailed("Operator id is required")
        if guest_token and not GuestTokenService.is_valid(guest_token):
            raise ValidationFailed("Invalid guest token")

        async with self._session_factory() as session:
            if conversation_id and await session.get(SupportConversation, conversation_id) is None:
                raise NotFound("Conversation not found")

            for attempt in range(1, self.max_attempts + 1):
                code = self._generate(self.length)
                taken = await session.execute(
                    select(AuthCode.id).where(
                        AuthCode.code == code,
                        AuthCode.status == AuthCodeStatus.PENDING.value,
                    )
                )
                if taken.first() is not None:
                    continue

                now = self._clock()
                auth_code = AuthCode(
                    code=code,
                    operator_id=operator_id,
                    account_id=account_id,
                    guest_token=guest_token,
                    conversation_id=conversation_id,
                    status=AuthCodeStatus.PENDING.value,
                    expires_at=now + self.ttl,
                    device_info=device_info,
                    created_at=now,
                )
                session.add(auth_code)
                try:
                    await session.commit()
                except IntegrityError:
                    # Same code issued concurrently elsewhere
                    await session.rollback()
                    continue

                await session.refresh(auth_code)
                logger.info(
                    "auth_code_issued",
                    auth_code_id=auth_code.id,
                    operator_id=operator_id,
                    conversation_id=conversation_id,
                    attempts=attempt,
                )
                return auth_code

        logger.error("auth_code_exhausted", operator_id=operator_id, attempts=self.max_attempts)
        raise Exhausted("Failed to generate a unique code")

    async def verify(
        self,
        code: str,
        account_id: Optional[str] = None,
        guest_token: Optional[str] = None,
    ) -> Optional[AuthCode]:
        """
        Returns the consumed code on success, None otherwise. The reason for
        a rejection is logged, never returned.
        """
        code = (code or "").strip()
        if not self._pattern.fullmatch(code):
            self._reject(code, "malformed")
            return None

        async with self._session_factory() as session:
            result = await session.execute(
                select(AuthCode).where(
                    AuthCode.code == code,
                    AuthCode.status == AuthCodeStatus.PENDING.value,
                )
            )
            auth_code = result.scalar_one_or_none()
            if auth_code is None:
                self._reject(code, "not_pending")
                return None

            now = self._clock()
            if now >= auth_code.expires_at:
                await session.execute(
                    update(AuthCode)
                    .where(AuthCode.id == auth_code.id, AuthCode.status == AuthCodeStatus.PENDING.value)
                    .values(status=AuthCodeStatus.EXPIRED.value)
                )
                await session.commit()
                self._reject(code, "expired")
                return None

            if not self._claim_matches(auth_code, account_id, guest_token):
                self._reject(code, "identity_mismatch")
                return None

            values = {"status": AuthCodeStatus.USED.value, "used_at": now}
            if account_id and not auth_code.account_id:
                # Claim on first sign-up
                values["account_id"] = account_id

            # Conditional on still pending: only one verifier can win
            consumed = await session.execute(
                update(AuthCode)
                .where(AuthCode.id == auth_code.id, AuthCode.status == AuthCodeStatus.PENDING.value)
                .values(**values)
            )
            await session.commit()
            if consumed.rowcount != 1:
                self._reject(code, "lost_race")
                return None

            await session.refresh(auth_code)

        logger.info("auth_code_verified", auth_code_id=auth_code.id, conversation_id=auth_code.conversation_id)
        return auth_code

    @staticmethod
    def _claim_matches(auth_code: AuthCode, account_id: Optional[str], guest_token: Optional[str]) -> bool:
        if not auth_code.account_id and not auth_code.guest_token:
            return True
        if auth_code.account_id and account_id == auth_code.account_id:
            return True
        if auth_code.guest_token and guest_token == auth_code.guest_token:
            return True
        return False

    @staticmethod
    def _reject(code: str, reason: str) -> None:
        logger.info("auth_code_rejected", code=mask_secret(code), reason=reason)
