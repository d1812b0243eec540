from datetime import datetime, timezone
from typing import Optional, Union

from activity_feed.schemas import as_utc


def format_time_ago(
    timestamp: Union[datetime, str],
    now: Optional[datetime] = None,
) -> str:
    """Short age label for a feed timestamp: 'just now', '5m', '3h', '2d', '1w', '4mo'."""
    if isinstance(timestamp, str):
        timestamp = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)

    seconds = (now - as_utc(timestamp)).total_seconds()
    minutes = int(seconds // 60)
    hours = int(seconds // 3600)
    days = int(seconds // 86400)

    if minutes < 1:
        return "just now"
    if minutes < 60:
        return f"{minutes}m"
    if hours < 24:
        return f"{hours}h"
    if days < 7:
        return f"{days}d"
    if days // 7 < 4:
        return f"{days // 7}w"
    return f"{max(1, days // 30)}mo"
