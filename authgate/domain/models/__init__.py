"""Domain models for the authgate service."""

from .session import ClientInfo, Session
from .social_connection import SocialConnection, SocialProvider
from .user import User

__all__ = [
    "ClientInfo",
    "Session",
    "SocialConnection",
    "SocialProvider",
    "User",
]
