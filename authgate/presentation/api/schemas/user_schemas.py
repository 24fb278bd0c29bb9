"""Pydantic schemas for profile and account endpoints."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator

from .auth import passwords_match


class ProfileUpdateRequest(BaseModel):
    """Partial profile update. Only fields present in the body are applied."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True, extra="forbid")

    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)
    username: Optional[str] = Field(default=None, min_length=3, max_length=50)
    profile_picture: Optional[str] = Field(default=None, alias="profilePicture", max_length=2048)


class EmailChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_email: EmailStr = Field(alias="newEmail")
    password: str = Field(min_length=1)


class PasswordChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=8)
    confirm_password: str = Field(alias="confirmPassword")

    @field_validator("confirm_password")
    @classmethod
    def _check_confirmation(cls, value: str, info: ValidationInfo) -> str:
        return passwords_match(value, info, "new_password")
