from datetime import datetime
from typing import Optional
from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from app.core.time_utils import UTC, as_utc


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that only ever holds absolute UTC instants.

    Values are normalized to UTC on the way in and come back timezone-aware
    on the way out, including on SQLite where the driver returns naive values.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if not isinstance(value, datetime):
            raise TypeError(f"UTCDateTime expects datetime, got {type(value).__name__}")
        value = as_utc(value)
        if dialect.name == "sqlite":
            # SQLite has no tz storage; persist the UTC wall clock
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)
