from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time used for every expiry comparison."""
    return datetime.now(tz=timezone.utc)
