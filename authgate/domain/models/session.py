"""Session domain model for issued bearer grants."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(slots=True)
class ClientInfo:
    """Request metadata attached to sessions and login notifications."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    timezone: Optional[str] = None


@dataclass(slots=True)
class Session:
    id: int
    user_id: int
    token: str
    expires_at: datetime
    created_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[str] = None
    timezone: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at

    def to_public(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ipAddress": self.ip_address,
            "userAgent": self.user_agent,
            "location": self.location,
            "timezone": self.timezone,
            "createdAt": self.created_at.replace(microsecond=0).isoformat(),
        }
