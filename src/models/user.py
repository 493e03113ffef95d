from datetime import datetime
from typing import Literal
from urllib.parse import quote

from pydantic import BaseModel, EmailStr, Field, field_validator

from models.base import utc_now

UserRole = Literal["user", "creator", "admin"]
USER_ROLES: tuple[str, ...] = ("user", "creator", "admin")

BD_PHONE_PATTERN = r"^(\+880|880|0)?1[3-9]\d{8}$"


class User(BaseModel):
    user_id: str  # The 'sub' from the Cognito JWT
    name: str = Field(min_length=2, max_length=100)
    email: EmailStr
    phone_number: str | None = Field(default=None, pattern=BD_PHONE_PATTERN)
    role: UserRole = "user"
    is_verified: bool = True
    avatar: str | None = Field(default=None, pattern=r"^https?://")

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("email")
    @classmethod
    def _lower_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("phone_number", "avatar", mode="before")
    @classmethod
    def _blank_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def display_name(self) -> str:
        return self.name or self.email

    @property
    def avatar_url(self) -> str:
        if self.avatar:
            return self.avatar
        return f"https://ui-avatars.com/api/?name={quote(self.name)}&background=random"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def can_create_projects(self) -> bool:
        return self.role in ("creator", "admin")


class AuthenticatedUser(BaseModel):
    """Identity taken from the verified token claims of the current request."""
    user_id: str
    email: str | None = None
    name: str | None = None
    role: UserRole = "user"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"
