from loguru import logger
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config.settings import settings
from src.core.errors import BranchNotFound, DirectoryLookupError, Forbidden, RoleNotFound
from src.domain.access.policy import Principal, PrivilegeName, authorize
from src.domain.directory.models import Branch, Company, Privilege, Role, RolePrivilege


class DirectoryStore:
    """Resolves organization names from identity claims into directory ids."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def resolve_company(self, name: str | None) -> int:
        """Looks up a company by its exact name.

        Args:
            name: The company name reported by the identity provider.

        Returns:
            int: The company id.

        Raises:
            DirectoryLookupError: If no company carries that name.
        """
        company = (await self.session.exec(select(Company).where(Company.c_name == name))).first()
        if not company:
            logger.error(f"Company not found: {name}")
            raise DirectoryLookupError(
                f"Company '{name}' is not registered. Please contact the administrator.",
                lookup="company",
                name=name,
            )
        return company.company_id

    async def resolve_branch(self, name: str | None, company_id: int | None = None) -> int:
        """Looks up a branch by name, optionally restricted to one company.

        Raises:
            DirectoryLookupError: If the branch is unknown or belongs to another company.
        """
        statement = select(Branch).where(Branch.b_name == name)
        if company_id is not None:
            statement = statement.where(Branch.company_id == company_id)
        branch = (await self.session.exec(statement.order_by(Branch.branch_id))).first()
        if not branch:
            logger.error(f"Branch not found: {name} (company {company_id})")
            raise DirectoryLookupError(
                f"Office '{name}' is not registered. Please contact the administrator.",
                lookup="branch",
                name=name,
            )
        return branch.branch_id

    async def resolve_default_role(self, branch_id: int) -> int | None:
        """Finds the branch-scoped default role; a missing role is not an error."""
        statement = select(Role).where(
            Role.role_name == settings.DEFAULT_ROLE_NAME,
            Role.for_branch == branch_id,
        )
        role = (await self.session.exec(statement)).first()
        if not role:
            logger.info(f"No '{settings.DEFAULT_ROLE_NAME}' role for branch {branch_id}, using NULL role")
            return None
        return role.role_id

    async def get_branch(self, branch_id: int) -> Branch | None:
        return await self.session.get(Branch, branch_id)

    async def get_role(self, role_id: int) -> Role | None:
        return await self.session.get(Role, role_id)

    async def role_name(self, role_id: int | None) -> str | None:
        if role_id is None:
            return None
        role = await self.get_role(role_id)
        return role.role_name if role else None

    async def privileges_for_role(self, role_id: int | None) -> frozenset[str]:
        """Returns the privilege names granted to a role (empty for no role)."""
        if role_id is None:
            return frozenset()
        statement = (
            select(Privilege.privilege_name)
            .join(RolePrivilege, RolePrivilege.privilege_id == Privilege.privilege_id)
            .where(RolePrivilege.role_id == role_id)
        )
        return frozenset((await self.session.exec(statement)).all())

    async def ensure_privileges(self) -> list[str]:
        """Seeds the privilege catalogue. Safe to run on every startup.

        Returns:
            list[str]: Names of the privileges that were missing and got inserted.
        """
        existing = set((await self.session.exec(select(Privilege.privilege_name))).all())
        missing = [name.value for name in PrivilegeName if name.value not in existing]
        for name in missing:
            self.session.add(Privilege(privilege_name=name))
        if missing:
            await self.session.commit()
            logger.info(f"Seeded privileges: {', '.join(missing)}")
        return missing

    async def assignable_branch(self, principal: Principal, branch_id: int, company_wide: bool = False) -> Branch:
        """Fetches a branch the principal is allowed to place users into.

        New users land inside the principal's own scope. Reassignment
        (``company_wide``) may move a user to any branch of the principal's company.

        Raises:
            BranchNotFound: If the branch does not exist.
            Forbidden: If the branch lies outside the principal's scope.
        """
        branch = await self.get_branch(branch_id)
        if not branch:
            raise BranchNotFound(branch_id=branch_id)
        if company_wide:
            if branch.company_id != principal.company_id:
                raise Forbidden("You can only assign branches from your company", branch_id=branch_id)
        else:
            authorize(principal, None, branch)
        return branch

    async def assignable_role(self, principal: Principal, role_id: int) -> Role:
        """Fetches a role the principal is allowed to hand out.

        Administrators assign company-owned roles of their company; everyone else
        assigns roles owned by their own branch.

        Raises:
            RoleNotFound: If the role does not exist.
            Forbidden: If the role is owned by a scope the principal does not control.
        """
        role = await self.get_role(role_id)
        if not role:
            raise RoleNotFound(role_id=role_id)

        if principal.is_admin:
            if role.for_company != principal.company_id:
                raise Forbidden("You can only assign roles from your company", role_id=role_id)
        elif role.for_branch is None or role.for_branch != principal.branch_id:
            raise Forbidden("You can only assign roles from your branch", role_id=role_id)
        return role
