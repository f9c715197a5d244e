from datetime import datetime
from typing import Optional
import pytz

UTC = pytz.utc

def get_utc_now() -> datetime:
    """Get current time in UTC (timezone-aware)."""
    return datetime.now(UTC)

def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to an aware UTC instant.
    Naive values are taken to already be UTC (that is how they are stored).
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return UTC.localize(dt)
    return dt.astimezone(UTC)

def epoch_millis(dt: Optional[datetime] = None) -> int:
    return int((dt or get_utc_now()).timestamp() * 1000)
