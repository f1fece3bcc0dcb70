from collections.abc import Sequence
from typing import Annotated, Any

from fastapi import APIRouter, Body, Depends, Request, status
from loguru import logger
from sqlmodel.ext.asyncio.session import AsyncSession

from src.app.schemas import CountResponse, RequestQueryParams, RequestRead, SidebarStats, StatusChange, UserRead
from src.core.database import get_session
from src.core.errors import NoActiveUser, RequestNotFound
from src.domain.access.policy import Principal, PrivilegeName, authorize, evaluate
from src.domain.requests.ledger import LISTING_PRIVILEGES, PermissionLedger
from src.domain.requests.models import PermissionRequest, RequestStatus
from src.domain.users.models import User, UserCreate, UserPatch, UserStatus
from src.domain.users.registry import UserRegistry

router = APIRouter(prefix="/api", tags=["Access Administration"])


async def get_current_principal(
    request: Request, session: Annotated[AsyncSession, Depends(get_session)]
) -> Principal:
    """Dependency rebuilding the principal from the signed session cookie.

    The user row is re-read on every request so that revocation takes effect
    immediately; the privilege set stays as resolved at login.

    Raises:
        NoActiveUser: If the session holds no principal, or its user is gone or no longer active.
    """
    principal = Principal.from_session(request.session.get("principal"))
    if principal is None:
        raise NoActiveUser()

    user = await session.get(User, principal.user_id)
    if not user or user.u_status != UserStatus.ACTIVE:
        logger.warning(f"Dropping session for {principal.email}: user is no longer active")
        request.session.pop("principal", None)
        raise NoActiveUser()
    return principal


def get_ledger(session: Annotated[AsyncSession, Depends(get_session)]) -> PermissionLedger:
    return PermissionLedger(session)


def get_registry(session: Annotated[AsyncSession, Depends(get_session)]) -> UserRegistry:
    return UserRegistry(session)


CurrentPrincipal = Annotated[Principal, Depends(get_current_principal)]
Ledger = Annotated[PermissionLedger, Depends(get_ledger)]
Registry = Annotated[UserRegistry, Depends(get_registry)]


# --- Permission Requests ---


@router.get("/requests", response_model=list[RequestRead])
async def list_requests(
    principal: CurrentPrincipal, ledger: Ledger, params: Annotated[RequestQueryParams, Depends()]
) -> Sequence[PermissionRequest]:
    """Lists requests of one status inside the principal's scope, newest first."""
    return await ledger.list_visible(principal, params.status)


@router.get("/requests/count", response_model=CountResponse)
async def count_requests(
    principal: CurrentPrincipal, ledger: Ledger, params: Annotated[RequestQueryParams, Depends()]
) -> dict[str, Any]:
    return {"status": params.status, "count": await ledger.count_visible(principal, params.status)}


@router.get("/requests/{request_id}", response_model=RequestRead)
async def get_request(request_id: int, principal: CurrentPrincipal, ledger: Ledger) -> PermissionRequest:
    """Fetches one request, provided its status is listable and it lies in scope."""
    permission_request = await ledger.get_by_id(request_id)
    if not permission_request:
        raise RequestNotFound(request_id=request_id)
    authorize(principal, LISTING_PRIVILEGES[permission_request.u_status], permission_request)
    return permission_request


@router.post("/requests/{request_id}/status", response_model=RequestRead)
async def set_request_status(
    request_id: int, change: StatusChange, principal: CurrentPrincipal, ledger: Ledger
) -> PermissionRequest:
    """Approves, rejects or revokes a request. Approval also activates the user.

    Args:
        request_id: The request to transition.
        change: Target status plus optional branch/role reassignment.
        principal: The acting administrator.
        ledger: The request ledger bound to this request's session.

    Returns:
        PermissionRequest: The updated request.
    """
    return await ledger.set_status(request_id, change.status, principal, change.patch)


# --- Users ---


@router.get("/users/active", response_model=list[UserRead])
async def list_active_users(principal: CurrentPrincipal, registry: Registry) -> Sequence[User]:
    return await registry.list_active(principal)


@router.get("/users/revoked", response_model=list[UserRead])
async def list_revoked_users(principal: CurrentPrincipal, registry: Registry) -> Sequence[User]:
    return await registry.list_revoked(principal)


@router.post("/users", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def add_user(data: UserCreate, principal: CurrentPrincipal, registry: Registry) -> User:
    """Adds an active user directly, closing any open request for the email."""
    return await registry.create(data, principal)


@router.post("/users/{user_id}/revoke", response_model=UserRead)
async def revoke_user(user_id: int, principal: CurrentPrincipal, registry: Registry) -> User:
    return await registry.revoke(user_id, principal)


@router.post("/users/{user_id}/reactivate", response_model=UserRead)
async def reactivate_user(
    user_id: int,
    principal: CurrentPrincipal,
    registry: Registry,
    patch: Annotated[UserPatch | None, Body()] = None,
) -> User:
    """Restores a revoked user; branch and role are kept unless the body names new ones."""
    return await registry.reactivate(user_id, patch, principal)


@router.post("/users/{user_id}/update", response_model=UserRead)
async def update_user(user_id: int, patch: UserPatch, principal: CurrentPrincipal, registry: Registry) -> User:
    return await registry.update(user_id, patch, principal)


# --- Stats ---


@router.get("/stats/sidebar", response_model=SidebarStats)
async def sidebar_stats(principal: CurrentPrincipal, ledger: Ledger, registry: Registry) -> SidebarStats:
    """Aggregates the navigation badge counters.

    Each counter is computed only when the principal could open the matching
    listing; otherwise it stays at zero.
    """
    stats = SidebarStats()

    if evaluate(principal, LISTING_PRIVILEGES[RequestStatus.PENDING]).allowed:
        stats.pending_requests = await ledger.count_visible(principal, RequestStatus.PENDING)
    if evaluate(principal, LISTING_PRIVILEGES[RequestStatus.APPROVED]).allowed:
        stats.approved_requests = await ledger.count_visible(principal, RequestStatus.APPROVED)
    if evaluate(principal, LISTING_PRIVILEGES[RequestStatus.REJECTED]).allowed:
        stats.rejected_requests = await ledger.count_visible(principal, RequestStatus.REJECTED)
    if evaluate(principal, PrivilegeName.LIST_REVOKED_USERS).allowed:
        stats.revoked_users = await registry.count(principal, UserStatus.REVOKED)
    stats.active_users = await registry.count(principal, UserStatus.ACTIVE)

    logger.debug(f"Sidebar stats for {principal.email}: {stats.model_dump()}")
    return stats
