"""Links between local users and external identity providers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict


class SocialProvider(str, Enum):
    GOOGLE = "google"
    GITHUB = "github"
    MICROSOFT = "microsoft"
    LINKEDIN = "linkedin"
    FACEBOOK = "facebook"
    APPLE = "apple"


@dataclass(slots=True)
class SocialConnection:
    """
    One external identity mapped to exactly one local user.

    ``data`` is the provider profile as received. Its shape differs per
    provider and is decoded by whoever consumes it.
    """

    id: int
    user_id: int
    provider: SocialProvider
    provider_id: str
    created_at: datetime
    updated_at: datetime
    data: Dict[str, Any] = field(default_factory=dict)
