import re
import secrets
import string
from typing import Optional

from app.core.time_utils import epoch_millis


class GuestTokenService:
    """
    Anonymous visitor identifiers.

    Format: guest_<epoch millis>_<lowercase base36 suffix>. Tokens are
    self-describing and validated by format only; the server keeps no
    issuance record.
    """

    PREFIX = "guest"
    SUFFIX_LENGTH = 12
    ALPHABET = string.ascii_lowercase + string.digits
    PATTERN = re.compile(r"guest_(\d+)_([a-z0-9]+)")
    MAX_LENGTH = 100

    @classmethod
    def generate(cls) -> str:
        suffix = "".join(secrets.choice(cls.ALPHABET) for _ in range(cls.SUFFIX_LENGTH))
        return f"{cls.PREFIX}_{epoch_millis()}_{suffix}"

    @classmethod
    def is_valid(cls, token: Optional[str]) -> bool:
        if not token or not isinstance(token, str) or len(token) > cls.MAX_LENGTH:
            return False
        return bool(cls.PATTERN.fullmatch(token))

    @classmethod
    def get_timestamp(cls, token: str) -> Optional[int]:
        """Epoch millis embedded in the token, or None if malformed."""
        if not cls.is_valid(token):
            return None
        return int(cls.PATTERN.fullmatch(token).group(1))
