from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator
from sqlmodel import Field, SQLModel

from src.core.utils import normalize_email, utcnow


class UserStatus(StrEnum):
    ACTIVE = "active"
    REVOKED = "revoked"


class User(SQLModel, table=True):
    """A person allowed through the SSO gate. Never hard-deleted."""

    __tablename__ = "users"

    user_id: int | None = Field(default=None, primary_key=True)
    display_name: str
    email: str = Field(unique=True, index=True)
    company_id: int = Field(foreign_key="company.company_id", index=True)
    branch_id: int = Field(foreign_key="branches.branch_id", index=True)
    role_id: int | None = Field(default=None, foreign_key="roles.role_id")
    u_status: UserStatus = Field(default=UserStatus.ACTIVE, index=True)
    assigned_by: int | None = None
    assigned_time: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


def _positive(value: int | None) -> int | None:
    if value is not None and value <= 0:
        raise ValueError("must be a positive id")
    return value


class UserPatch(BaseModel):
    """Explicit set of mutable user fields. Unset fields are left untouched."""

    model_config = ConfigDict(extra="forbid")

    display_name: str | None = None
    branch_id: int | None = None
    role_id: int | None = None

    @field_validator("display_name")
    @classmethod
    def _strip_display_name(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not value:
            raise ValueError("display_name cannot be blank")
        return value

    @field_validator("branch_id", "role_id")
    @classmethod
    def _check_ids(cls, value: int | None) -> int | None:
        return _positive(value)

    @property
    def touches_assignment(self) -> bool:
        return self.branch_id is not None or self.role_id is not None


class UserCreate(BaseModel):
    """Payload for a direct, administrator-initiated user insert."""

    model_config = ConfigDict(extra="forbid")

    display_name: str
    email: str
    branch_id: int
    role_id: int

    @field_validator("display_name")
    @classmethod
    def _require_display_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("display_name is required")
        return value

    @field_validator("email")
    @classmethod
    def _require_email(cls, value: str) -> str:
        email = normalize_email(value)
        if not email or "@" not in email:
            raise ValueError("a valid email is required")
        return email

    @field_validator("branch_id", "role_id")
    @classmethod
    def _check_ids(cls, value: int) -> int:
        return _positive(value)
