from collections.abc import Sequence

from loguru import logger
from sqlalchemy.exc import IntegrityError
from sqlmodel import desc, func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import atomic
from src.core.errors import Conflict, RequestNotFound
from src.core.utils import normalize_email, utcnow
from src.domain.access.policy import Principal, PrivilegeName, Scope, authorize
from src.domain.access.profile import SsoProfile
from src.domain.directory.store import DirectoryStore
from src.domain.requests.models import (
    PermissionRequest,
    RequestPatch,
    RequestStatus,
    check_transition,
    parse_settable_status,
)
from src.domain.users.models import User, UserStatus

# Which privilege lets a non-admin see requests in a given status.
LISTING_PRIVILEGES: dict[RequestStatus, PrivilegeName] = {
    RequestStatus.PENDING: PrivilegeName.LIST_REQUESTS,
    RequestStatus.APPROVED: PrivilegeName.VIEW_APPROVED_REQUESTS,
    RequestStatus.REJECTED: PrivilegeName.VIEW_REJECTED_REQUESTS,
    RequestStatus.REVOKED: PrivilegeName.LIST_REQUESTS,
    RequestStatus.PROCESSED: PrivilegeName.LIST_REQUESTS,
}


class PermissionLedger:
    """Persistence and status transitions for access requests."""

    def __init__(self, session: AsyncSession, directory: DirectoryStore | None = None) -> None:
        self.session = session
        self.directory = directory or DirectoryStore(session)

    # --- Reads ---

    async def get_by_email(self, email: str | None) -> PermissionRequest | None:
        email = normalize_email(email)
        if not email:
            return None
        statement = select(PermissionRequest).where(PermissionRequest.email == email)
        return (await self.session.exec(statement)).first()

    async def get_by_id(self, request_id: int) -> PermissionRequest | None:
        return await self.session.get(PermissionRequest, request_id)

    async def list_all(self) -> Sequence[PermissionRequest]:
        """Returns every request, most recent id first."""
        statement = select(PermissionRequest).order_by(desc(PermissionRequest.request_id))
        return (await self.session.exec(statement)).all()

    async def list_for_scope(
        self, company_id: int, branch_id: int | None = None, status: RequestStatus | None = None
    ) -> Sequence[PermissionRequest]:
        """Returns requests of one company, narrowed to a branch for branch-level scope."""
        statement = select(PermissionRequest).where(PermissionRequest.company_id == company_id)
        if branch_id is not None:
            statement = statement.where(PermissionRequest.branch_id == branch_id)
        if status is not None:
            statement = statement.where(PermissionRequest.u_status == status)
        statement = statement.order_by(desc(PermissionRequest.request_id))
        return (await self.session.exec(statement)).all()

    async def list_visible(
        self, principal: Principal | None, status: RequestStatus = RequestStatus.PENDING
    ) -> Sequence[PermissionRequest]:
        """Lists the requests in ``status`` that the principal is allowed to see."""
        scope = authorize(principal, LISTING_PRIVILEGES[status])
        return await self.list_for_scope(scope.company_id, scope.branch_id, status)

    async def count_visible(self, principal: Principal | None, status: RequestStatus) -> int:
        scope = authorize(principal, LISTING_PRIVILEGES[status])
        return await self._count(scope, status)

    async def _count(self, scope: Scope, status: RequestStatus) -> int:
        statement = select(func.count(PermissionRequest.request_id)).where(
            PermissionRequest.company_id == scope.company_id,
            PermissionRequest.u_status == status,
        )
        if scope.branch_id is not None:
            statement = statement.where(PermissionRequest.branch_id == scope.branch_id)
        return (await self.session.exec(statement)).one()

    # --- Writes ---

    async def create(self, profile: SsoProfile) -> PermissionRequest:
        """Queues an access request for an unrecognized SSO identity.

        Idempotent by email: if a request already exists it is returned as-is,
        whatever its status.

        Args:
            profile: The normalized identity assertion.

        Returns:
            PermissionRequest: The new or pre-existing request.

        Raises:
            DirectoryLookupError: If the company or office cannot be resolved.
        """
        email = profile.require_email()
        existing = await self.get_by_email(email)
        if existing:
            logger.info(f"Permission request already exists for {email} ({existing.u_status})")
            return existing

        company_id = await self.directory.resolve_company(profile.company_name)
        branch_id = await self.directory.resolve_branch(profile.office_location, company_id)
        role_id = await self.directory.resolve_default_role(branch_id)

        request = PermissionRequest(
            email=email,
            display_name=profile.display_name,
            company_id=company_id,
            branch_id=branch_id,
            role_id=role_id,
            u_status=RequestStatus.PENDING,
        )
        self.session.add(request)
        try:
            await self.session.commit()
        except IntegrityError as e:
            # A concurrent login for the same email won the insert
            await self.session.rollback()
            winner = await self.get_by_email(email)
            if winner:
                logger.info(f"Concurrent request creation for {email}, reusing #{winner.request_id}")
                return winner
            raise Conflict("Permission request could not be recorded", email=email) from e

        await self.session.refresh(request)
        logger.info(f"Permission request #{request.request_id} created for {request.email}")
        return request

    async def set_status(
        self,
        request_id: int,
        new_status: RequestStatus | str,
        principal: Principal | None,
        patch: RequestPatch | None = None,
    ) -> PermissionRequest:
        """Moves a request through its lifecycle on behalf of an administrator.

        Approval is applied in one transaction together with the matching user
        row: the request is stamped with approver and time, and the user is
        inserted (or reactivated in place) with the request's assignment.

        Args:
            request_id: The request to transition.
            new_status: One of approved, rejected, revoked.
            principal: The acting principal.
            patch: Optional branch/role reassignment applied before approval.

        Returns:
            PermissionRequest: The updated request.

        Raises:
            InvalidStatus: If the status is not settable or the transition is illegal.
            NoActiveUser: If there is no principal.
            Forbidden: If the principal lacks a privilege or the request is out of scope.
            RequestNotFound: If the id is unknown.
            TransactionFailure: If the database rejects the write; nothing is applied.
        """
        target_status = parse_settable_status(new_status)
        authorize(principal, PrivilegeName.UPDATE_REQUESTS)

        request = await self.get_by_id(request_id)
        if not request:
            raise RequestNotFound(request_id=request_id)

        authorize(principal, PrivilegeName.UPDATE_REQUESTS, request)
        check_transition(request.u_status, target_status)

        assignment = await self._resolve_patch(request, patch, principal) if patch else {}
        if target_status == RequestStatus.APPROVED:
            await self._check_existing_user(request.email, principal)

        async with atomic(self.session, f"request #{request_id} -> {target_status}"):
            for column, value in assignment.items():
                setattr(request, column, value)
            request.u_status = target_status
            request.updated_at = utcnow()
            if target_status == RequestStatus.APPROVED:
                request.approved_by = principal.user_id
                request.approved_time = utcnow()
                await self._upsert_user(request, assigned_by=principal.user_id)
            self.session.add(request)

        await self.session.refresh(request)
        logger.info(f"Permission request #{request_id} set to {target_status} by user {principal.user_id}")
        return request

    async def materialize(self, request: PermissionRequest) -> User:
        """Folds an approved request whose user row is missing into an active user.

        The request is marked processed in the same transaction.

        Raises:
            InvalidStatus: If the request is not approved.
            TransactionFailure: If the database rejects the write.
        """
        check_transition(request.u_status, RequestStatus.PROCESSED)

        async with atomic(self.session, f"materialize request #{request.request_id}"):
            user = await self._upsert_user(request, assigned_by=request.approved_by)
            request.u_status = RequestStatus.PROCESSED
            request.updated_at = utcnow()
            self.session.add(request)

        await self.session.refresh(user)
        logger.info(f"Approved request #{request.request_id} folded into user {user.user_id}")
        return user

    async def close_open_request(self, email: str) -> PermissionRequest | None:
        """Stages PROCESSED on an open request for ``email``. Caller commits."""
        request = await self.get_by_email(email)
        if not request or request.u_status not in (RequestStatus.PENDING, RequestStatus.APPROVED):
            return None
        request.u_status = RequestStatus.PROCESSED
        request.updated_at = utcnow()
        self.session.add(request)
        return request

    async def _resolve_patch(
        self, request: PermissionRequest, patch: RequestPatch, principal: Principal
    ) -> dict[str, int]:
        """Validates a reassignment field by field without touching the request."""
        assignment: dict[str, int] = {}
        if patch.branch_id is not None:
            authorize(principal, PrivilegeName.ASSIGN_BRANCH, request)
            branch = await self.directory.assignable_branch(principal, patch.branch_id, company_wide=True)
            assignment["branch_id"] = branch.branch_id
            assignment["company_id"] = branch.company_id
        if patch.role_id is not None:
            authorize(principal, PrivilegeName.ASSIGN_ROLE, request)
            role = await self.directory.assignable_role(principal, patch.role_id)
            assignment["role_id"] = role.role_id
        return assignment

    async def _check_existing_user(self, email: str, principal: Principal) -> None:
        """Approval folds into an existing user, so that user must be in scope too.

        Raises:
            Forbidden: If the user lies outside the principal's scope, or is
                revoked and the principal lacks ``reactivate_user``.
        """
        user = (await self.session.exec(select(User).where(User.email == email))).first()
        if user is None:
            return
        authorize(principal, PrivilegeName.UPDATE_REQUESTS, user)
        if user.u_status == UserStatus.REVOKED:
            authorize(principal, PrivilegeName.REACTIVATE_USER, user)

    async def _upsert_user(self, request: PermissionRequest, assigned_by: int | None) -> User:
        """Stages the active user row that mirrors an approved request."""
        statement = select(User).where(User.email == request.email)
        user = (await self.session.exec(statement)).first()
        now = utcnow()

        if user is None:
            user = User(
                display_name=request.display_name,
                email=request.email,
                company_id=request.company_id,
                branch_id=request.branch_id,
                role_id=request.role_id,
                u_status=UserStatus.ACTIVE,
                assigned_by=assigned_by,
                assigned_time=now,
            )
            logger.info(f"Adding user {request.email} to users table")
        else:
            user.u_status = UserStatus.ACTIVE
            user.company_id = request.company_id
            user.branch_id = request.branch_id
            user.role_id = request.role_id
            user.assigned_by = assigned_by
            user.assigned_time = now
            user.updated_at = now
            logger.info(f"User {request.email} already exists, reactivating in place")

        self.session.add(user)
        await self.session.flush()
        return user
