from collections.abc import Sequence

from loguru import logger
from sqlmodel import desc, func, select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.database import atomic
from src.core.errors import Conflict, UserNotFound
from src.core.utils import normalize_email, utcnow
from src.domain.access.policy import Principal, PrivilegeName, Scope, authorize
from src.domain.directory.store import DirectoryStore
from src.domain.requests.ledger import PermissionLedger
from src.domain.users.models import User, UserCreate, UserPatch, UserStatus


class UserRegistry:
    """Scoped reads and privilege-gated mutations over the ``users`` table."""

    def __init__(self, session: AsyncSession, directory: DirectoryStore | None = None) -> None:
        self.session = session
        self.directory = directory or DirectoryStore(session)

    # --- Reads ---

    async def find_by_email(self, email: str | None) -> User | None:
        email = normalize_email(email)
        if not email:
            return None
        return (await self.session.exec(select(User).where(User.email == email))).first()

    async def get(self, user_id: int) -> User | None:
        return await self.session.get(User, user_id)

    async def list_active(self, principal: Principal | None) -> Sequence[User]:
        scope = authorize(principal, PrivilegeName.LIST_ACTIVE_USERS)
        statement = self._scoped(scope, UserStatus.ACTIVE).order_by(desc(User.created_at), desc(User.user_id))
        return (await self.session.exec(statement)).all()

    async def list_revoked(self, principal: Principal | None) -> Sequence[User]:
        scope = authorize(principal, PrivilegeName.LIST_REVOKED_USERS)
        statement = self._scoped(scope, UserStatus.REVOKED).order_by(desc(User.updated_at), desc(User.user_id))
        return (await self.session.exec(statement)).all()

    async def count(self, principal: Principal | None, status: UserStatus) -> int:
        """Counts users in the principal's scope.

        Active users are counted for any authenticated principal; revoked users
        require ``list_revoked_users``.
        """
        privilege = PrivilegeName.LIST_REVOKED_USERS if status == UserStatus.REVOKED else None
        scope = authorize(principal, privilege)
        statement = select(func.count(User.user_id)).where(User.company_id == scope.company_id, User.u_status == status)
        if scope.branch_id is not None:
            statement = statement.where(User.branch_id == scope.branch_id)
        return (await self.session.exec(statement)).one()

    @staticmethod
    def _scoped(scope: Scope, status: UserStatus):
        statement = select(User).where(User.company_id == scope.company_id, User.u_status == status)
        if scope.branch_id is not None:
            statement = statement.where(User.branch_id == scope.branch_id)
        return statement

    async def _get_in_scope(self, user_id: int, principal: Principal, privilege: PrivilegeName) -> User:
        # Privilege first so an unprivileged caller learns nothing about the id
        authorize(principal, privilege)
        user = await self.get(user_id)
        if not user:
            raise UserNotFound(user_id=user_id)
        authorize(principal, privilege, user)
        return user

    # --- Writes ---

    async def revoke(self, user_id: int, principal: Principal | None) -> User:
        """Revokes a user's access.

        Raises:
            Forbidden: If the principal lacks ``revoke_user`` or the user is out of scope.
            UserNotFound: If the id is unknown.
        """
        user = await self._get_in_scope(user_id, principal, PrivilegeName.REVOKE_USER)

        async with atomic(self.session, f"revoke user {user_id}"):
            user.u_status = UserStatus.REVOKED
            user.updated_at = utcnow()
            self.session.add(user)

        logger.info(f"User {user.email} revoked by user {principal.user_id}")
        return user

    async def reactivate(self, user_id: int, patch: UserPatch | None, principal: Principal | None) -> User:
        """Restores a revoked user, optionally moving them to another branch or role.

        Branch and role are preserved unless the patch names them. Scope is
        checked against the user as stored, independently of the patch.

        Raises:
            Forbidden: If a required privilege is missing or any scope check fails.
            UserNotFound: If the id is unknown.
        """
        user = await self._get_in_scope(user_id, principal, PrivilegeName.REACTIVATE_USER)
        changes = await self._resolve_patch(user, patch or UserPatch(), principal)

        async with atomic(self.session, f"reactivate user {user_id}"):
            for column, value in changes.items():
                setattr(user, column, value)
            user.u_status = UserStatus.ACTIVE
            user.updated_at = utcnow()
            self.session.add(user)

        logger.info(f"User {user.email} reactivated by user {principal.user_id}")
        return user

    async def update(self, user_id: int, patch: UserPatch, principal: Principal | None) -> User:
        """Edits display name and, with the matching privileges, branch and role."""
        user = await self._get_in_scope(user_id, principal, PrivilegeName.UPDATE_USERS)
        changes = await self._resolve_patch(user, patch, principal)

        if not changes:
            return user

        async with atomic(self.session, f"update user {user_id}"):
            for column, value in changes.items():
                setattr(user, column, value)
            user.updated_at = utcnow()
            self.session.add(user)

        logger.info(f"User {user.email} updated by user {principal.user_id}: {sorted(changes)}")
        return user

    async def create(self, data: UserCreate, principal: Principal | None) -> User:
        """Adds an active user directly, bypassing the request queue.

        Any open request for the same email is closed as processed in the same
        transaction.

        Raises:
            Forbidden: If ``add_users``/``assign_role`` is missing or the branch/role is out of scope.
            Conflict: If the email is already registered.
            BranchNotFound: If the branch does not exist.
            RoleNotFound: If the role does not exist.
        """
        authorize(principal, PrivilegeName.ADD_USERS)

        if await self.find_by_email(data.email):
            raise Conflict("Email already exists", email=data.email)

        branch = await self.directory.assignable_branch(principal, data.branch_id)
        authorize(principal, PrivilegeName.ASSIGN_ROLE, branch)
        role = await self.directory.assignable_role(principal, data.role_id)

        now = utcnow()
        user = User(
            display_name=data.display_name,
            email=data.email,
            company_id=branch.company_id,
            branch_id=branch.branch_id,
            role_id=role.role_id,
            u_status=UserStatus.ACTIVE,
            assigned_by=principal.user_id,
            assigned_time=now,
        )

        async with atomic(self.session, f"add user {data.email}"):
            self.session.add(user)
            closed = await PermissionLedger(self.session, self.directory).close_open_request(data.email)

        await self.session.refresh(user)
        if closed:
            logger.info(f"Open request #{closed.request_id} for {data.email} closed by direct add")
        logger.info(f"User {user.email} added by user {principal.user_id}")
        return user

    async def _resolve_patch(self, user: User, patch: UserPatch, principal: Principal) -> dict[str, object]:
        """Validates each patch field against privileges and the directory."""
        changes: dict[str, object] = {}
        if patch.display_name is not None and patch.display_name != user.display_name:
            changes["display_name"] = patch.display_name
        if patch.branch_id is not None:
            authorize(principal, PrivilegeName.ASSIGN_BRANCH, user)
            branch = await self.directory.assignable_branch(principal, patch.branch_id, company_wide=True)
            changes["branch_id"] = branch.branch_id
            changes["company_id"] = branch.company_id
        if patch.role_id is not None:
            authorize(principal, PrivilegeName.ASSIGN_ROLE, user)
            role = await self.directory.assignable_role(principal, patch.role_id)
            changes["role_id"] = role.role_id
        return changes
