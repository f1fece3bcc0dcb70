from dataclasses import dataclass
from datetime import datetime

from fastapi import Query
from pydantic import BaseModel, ConfigDict, Field

from src.domain.requests.models import RequestPatch, RequestStatus
from src.domain.users.models import UserStatus


@dataclass
class RequestQueryParams:
    """Encapsulates GET query parameters for the request listings."""

    status: RequestStatus = Query(default=RequestStatus.PENDING, description="Filter by request status")


class StatusChange(BaseModel):
    """Body of ``POST /api/requests/{id}/status``.

    ``status`` is validated by the ledger so that unsupported values surface as
    ``InvalidStatus`` rather than a schema error.
    """

    model_config = ConfigDict(extra="forbid")

    status: str
    branch_id: int | None = Field(default=None, gt=0)
    role_id: int | None = Field(default=None, gt=0)

    @property
    def patch(self) -> RequestPatch | None:
        patch = RequestPatch(branch_id=self.branch_id, role_id=self.role_id)
        return None if patch.is_empty else patch


class CountResponse(BaseModel):
    status: str
    count: int


class SidebarStats(BaseModel):
    """Badge counters for the admin navigation. Zero where the principal may not look."""

    pending_requests: int = 0
    active_users: int = 0
    revoked_users: int = 0
    approved_requests: int = 0
    rejected_requests: int = 0


class RequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    request_id: int
    email: str
    display_name: str
    company_id: int
    branch_id: int
    role_id: int | None = None
    u_status: RequestStatus
    approved_by: int | None = None
    approved_time: datetime | None = None
    created_at: datetime
    updated_at: datetime


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: int
    display_name: str
    email: str
    company_id: int
    branch_id: int
    role_id: int | None = None
    u_status: UserStatus
    assigned_by: int | None = None
    assigned_time: datetime | None = None
    created_at: datetime
    updated_at: datetime
