from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from shared.utils import MAX_BCRYPT_BYTES


def _bcrypt_max_bytes(v: str) -> str:
    if len(v.encode("utf-8")) > MAX_BCRYPT_BYTES:
        raise ValueError("Password too long (max 72 bytes for bcrypt).")
    return v


def _otp_as_string(v):
    # codes are compared as strings; a client may send 123456 as a number
    if isinstance(v, int) and not isinstance(v, bool):
        return str(v)
    return v


class CamelIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# -------------------------
# Auth (Register / Login)
# -------------------------

class RegisterIn(BaseModel):
    name: str = Field(min_length=1, max_length=120)
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    phone_number: str | None = Field(default=None, max_length=32)
    year: str | None = Field(default=None, max_length=16)
    student_code: str | None = Field(default=None, max_length=64)
    # accepted only so a non-student value can be refused explicitly
    role: str | None = None

    @field_validator("password")
    @classmethod
    def bcrypt_max_bytes(cls, v: str) -> str:
        return _bcrypt_max_bytes(v)


class LoginIn(BaseModel):
    email: EmailStr
    password: str = Field(min_length=1, max_length=128)


class UpdatePasswordIn(CamelIn):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=8, max_length=128)

    @field_validator("new_password")
    @classmethod
    def bcrypt_max_bytes(cls, v: str) -> str:
        return _bcrypt_max_bytes(v)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: str
    phone_number: str | None = None
    year: str | None = None
    student_code: str | None = None
    email_verified: bool = False
    login_count: int = 0
    last_login_at: datetime | None = None
    created_at: datetime | None = None


# -------------------------
# Admin user management
# -------------------------

class CreateUserIn(RegisterIn):
    role: Literal["teacher", "admin"]


class RoleUpdateIn(BaseModel):
    role: Literal["student", "teacher", "admin"]


# -------------------------
# Forgot / Reset Password (reset link token)
# -------------------------

class ForgotPasswordIn(BaseModel):
    email: EmailStr


class NewPasswordIn(BaseModel):
    password: str = Field(min_length=8, max_length=128)

    @field_validator("password")
    @classmethod
    def bcrypt_max_bytes(cls, v: str) -> str:
        return _bcrypt_max_bytes(v)


# -------------------------
# OTP
# -------------------------

class OTPRequestIn(BaseModel):
    email: EmailStr
    purpose: str = "verification"


class OTPVerifyIn(BaseModel):
    email: EmailStr
    otp: str = Field(min_length=1, max_length=12)
    purpose: str | None = None

    @field_validator("otp", mode="before")
    @classmethod
    def otp_as_string(cls, v):
        return _otp_as_string(v)


class OTPResetIn(CamelIn):
    email: EmailStr
    otp: str = Field(min_length=1, max_length=12)
    new_password: str = Field(alias="newPassword", min_length=8, max_length=128)

    @field_validator("otp", mode="before")
    @classmethod
    def otp_as_string(cls, v):
        return _otp_as_string(v)

    @field_validator("new_password")
    @classmethod
    def bcrypt_max_bytes(cls, v: str) -> str:
        return _bcrypt_max_bytes(v)


class GenericMsgOut(BaseModel):
    success: bool = True
    message: str
