from datetime import datetime
from typing import Optional
from pydantic import BaseModel, field_validator
from models.common import UserRole


class User(BaseModel):
    user_id:      str
    email:        str
    full_name:    str
    phone_number: Optional[str] = None   # 2547XXXXXXXX
    location:     Optional[str] = None
    role:         UserRole = UserRole.FARMER
    is_active:    bool     = True
    # Timestamps
    created_at:   datetime
    updated_at:   datetime


class SignUpRequest(BaseModel):
    email:        str
    password:     str
    full_name:    str
    phone_number: Optional[str] = None
    location:     Optional[str] = None

    @field_validator("email")
    @classmethod
    def email_lowercase(cls, v: str) -> str:
        v = v.strip().lower()
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    @field_validator("password")
    @classmethod
    def password_length(cls, v: str) -> str:
        if len(v) < 8:
            raise ValueError("Password must be at least 8 characters")
        return v


class SignInRequest(BaseModel):
    email:    str
    password: str


class TokenResponse(BaseModel):
    access_token:  str
    refresh_token: str
    token_type:    str = "bearer"
    user:          User


class RefreshRequest(BaseModel):
    refresh_token: str


class ProfileUpdate(BaseModel):
    full_name:    Optional[str] = None
    phone_number: Optional[str] = None
    location:     Optional[str] = None
    fcm_token:    Optional[str] = None
