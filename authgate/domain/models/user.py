"""User domain model for account identity and credentials."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional


@dataclass(slots=True)
class User:
    """
    User entity holding identity, credentials and verification state.

    Attributes:
        id: Unique identifier
        email: Email address (unique, compared case-insensitively)
        username: Username (unique, compared case-insensitively)
        password_hash: bcrypt digest, ``None`` for social-only accounts
        is_verified: Whether the email address has been confirmed
        verification_token: Pending email verification token
        verification_expires_at: Expiry of ``verification_token``
        reset_password_token: Pending password reset token
        reset_password_expires_at: Expiry of ``reset_password_token``
        two_factor_enabled: Whether TOTP is required at login
        two_factor_secret: Base32 TOTP secret, set during setup
        two_factor_last_step: Last TOTP time step accepted for this user
    """

    id: int
    email: str
    username: str
    password_hash: Optional[str]
    created_at: datetime
    updated_at: datetime
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_verified: bool = False
    verification_token: Optional[str] = None
    verification_expires_at: Optional[datetime] = None
    reset_password_token: Optional[str] = None
    reset_password_expires_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    two_factor_secret: Optional[str] = None
    two_factor_last_step: Optional[int] = None
    profile_picture: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.first_name or self.username

    def to_public(self) -> Dict[str, Any]:
        """Projection safe to return to clients: no hashes, tokens or secrets."""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "isVerified": self.is_verified,
            "twoFactorEnabled": self.two_factor_enabled,
            "profilePicture": self.profile_picture,
        }

    def __repr__(self) -> str:
        return f"<User id={self.id} email={self.email} verified={self.is_verified}>"
