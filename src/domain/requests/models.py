from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator
from sqlmodel import Field, SQLModel

from src.core.errors import InvalidStatus
from src.core.utils import utcnow


class RequestStatus(StrEnum):
    """Lifecycle of an access request raised by an unrecognized SSO login."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVOKED = "revoked"
    PROCESSED = "processed"


# Statuses an administrator may ask for; PROCESSED is only set internally.
SETTABLE_STATUSES: frozenset[RequestStatus] = frozenset(
    {RequestStatus.APPROVED, RequestStatus.REJECTED, RequestStatus.REVOKED}
)

# Repeating the current status is allowed where a retry must be harmless.
TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.APPROVED: frozenset({RequestStatus.APPROVED, RequestStatus.REVOKED, RequestStatus.PROCESSED}),
    RequestStatus.REJECTED: frozenset({RequestStatus.APPROVED, RequestStatus.REJECTED}),
    RequestStatus.REVOKED: frozenset({RequestStatus.REVOKED}),
    RequestStatus.PROCESSED: frozenset({RequestStatus.REVOKED}),
}


def parse_settable_status(value: str | RequestStatus) -> RequestStatus:
    """Validates an administrator-supplied status before any query runs.

    Raises:
        InvalidStatus: If the value is unknown or not settable by hand.
    """
    try:
        status = RequestStatus(value)
    except ValueError as e:
        raise InvalidStatus(f"Unknown status '{value}'") from e
    if status not in SETTABLE_STATUSES:
        allowed = ", ".join(sorted(s.value for s in SETTABLE_STATUSES))
        raise InvalidStatus(f"Invalid status '{status}'. Must be one of: {allowed}")
    return status


def check_transition(current: RequestStatus, target: RequestStatus) -> None:
    """Raises InvalidStatus when ``current -> target`` is not in the transition table."""
    if target not in TRANSITIONS.get(current, frozenset()):
        raise InvalidStatus(f"Cannot move a {current} request to {target}", current=current, target=target)


class PermissionRequest(SQLModel, table=True):
    """Queued access request. One row per email for the whole lifecycle."""

    __tablename__ = "permission_requests"

    request_id: int | None = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    display_name: str
    company_id: int = Field(foreign_key="company.company_id", index=True)
    branch_id: int = Field(foreign_key="branches.branch_id", index=True)
    role_id: int | None = Field(default=None, foreign_key="roles.role_id")
    u_status: RequestStatus = Field(default=RequestStatus.PENDING, index=True)
    approved_by: int | None = None
    approved_time: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RequestPatch(BaseModel):
    """Optional reassignment applied to a request at approval time."""

    model_config = ConfigDict(extra="forbid")

    branch_id: int | None = None
    role_id: int | None = None

    @field_validator("branch_id", "role_id")
    @classmethod
    def _check_ids(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("must be a positive id")
        return value

    @property
    def is_empty(self) -> bool:
        return self.branch_id is None and self.role_id is None
