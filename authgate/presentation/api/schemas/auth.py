"""Pydantic schemas for authentication endpoints."""

from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationInfo, field_validator


def passwords_match(value: str, info: ValidationInfo, field: str) -> str:
    if field in info.data and value != info.data[field]:
        raise ValueError("Passwords do not match")
    return value


class RegisterRequest(BaseModel):
    """Request schema for user registration."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    email: EmailStr
    username: str = Field(min_length=3, max_length=50)
    password: str = Field(min_length=8, description="Password must be at least 8 characters")
    confirm_password: str = Field(alias="confirmPassword")
    first_name: Optional[str] = Field(default=None, alias="firstName", max_length=100)
    last_name: Optional[str] = Field(default=None, alias="lastName", max_length=100)

    @field_validator("confirm_password")
    @classmethod
    def _check_confirmation(cls, value: str, info: ValidationInfo) -> str:
        return passwords_match(value, info, "password")


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1)


class EmailRequest(BaseModel):
    """Request schema for forgot-password and resend-verification."""

    email: EmailStr


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str = Field(min_length=1)
    password: str = Field(min_length=8)
    confirm_password: str = Field(alias="confirmPassword")

    @field_validator("confirm_password")
    @classmethod
    def _check_confirmation(cls, value: str, info: ValidationInfo) -> str:
        return passwords_match(value, info, "password")


class TwoFactorCodeRequest(BaseModel):
    code: str = Field(min_length=6, max_length=6)
