"""Bootstraps a company, its first office and an administrator account.

Usage:
    python -m scripts.seed_directory --company Acme --office HQ --admin-email it@acme.com
"""

import argparse
import asyncio

from sqlmodel import SQLModel, select

from src.config.settings import settings
from src.core.database import async_session_maker, engine
from src.domain.directory.models import Branch, Company, Role
from src.domain.directory.store import DirectoryStore
from src.domain.users.models import User, UserStatus


async def seed(company_name: str, office: str, admin_email: str, admin_name: str) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    async with async_session_maker() as session:
        store = DirectoryStore(session)
        inserted = await store.ensure_privileges()
        print(f"Privileges seeded: {inserted or 'none missing'}")

        company = (await session.exec(select(Company).where(Company.c_name == company_name))).first()
        if not company:
            company = Company(c_name=company_name)
            session.add(company)
            await session.flush()
            print(f"Created company: {company_name}")

        branch = (
            await session.exec(select(Branch).where(Branch.company_id == company.company_id, Branch.b_name == office))
        ).first()
        if not branch:
            branch = Branch(b_name=office, company_id=company.company_id)
            session.add(branch)
            await session.flush()
            print(f"Created office: {office}")

        admin_role = (
            await session.exec(
                select(Role).where(Role.role_name == settings.ADMIN_ROLE_NAME, Role.for_company == company.company_id)
            )
        ).first()
        if not admin_role:
            admin_role = Role(role_name=settings.ADMIN_ROLE_NAME, for_company=company.company_id)
            session.add(admin_role)

        default_role = (
            await session.exec(
                select(Role).where(Role.role_name == settings.DEFAULT_ROLE_NAME, Role.for_branch == branch.branch_id)
            )
        ).first()
        if not default_role:
            session.add(Role(role_name=settings.DEFAULT_ROLE_NAME, for_branch=branch.branch_id))
        await session.flush()

        admin = (await session.exec(select(User).where(User.email == admin_email))).first()
        if admin:
            print(f"Skipped: {admin_email} already exists ({admin.u_status})")
        else:
            session.add(
                User(
                    display_name=admin_name,
                    email=admin_email,
                    company_id=company.company_id,
                    branch_id=branch.branch_id,
                    role_id=admin_role.role_id,
                    u_status=UserStatus.ACTIVE,
                )
            )
            print(f"Created administrator: {admin_email}")

        await session.commit()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--company", required=True)
    parser.add_argument("--office", required=True)
    parser.add_argument("--admin-email", required=True)
    parser.add_argument("--admin-name", default="Administrator")
    args = parser.parse_args()

    asyncio.run(seed(args.company, args.office, args.admin_email.strip(), args.admin_name))


if __name__ == "__main__":
    main()
