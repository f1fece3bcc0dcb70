from sqlalchemy import CheckConstraint, UniqueConstraint
from sqlmodel import Field, SQLModel


class Company(SQLModel, table=True):
    """Top-level tenant. Owns branches and company-wide roles."""

    __tablename__ = "company"

    company_id: int | None = Field(default=None, primary_key=True)
    c_name: str = Field(unique=True, index=True)


class Branch(SQLModel, table=True):
    """Office location within a company. Scopes users, requests and branch roles."""

    __tablename__ = "branches"
    __table_args__ = (UniqueConstraint("company_id", "b_name", name="uq_branch_name_per_company"),)

    branch_id: int | None = Field(default=None, primary_key=True)
    b_name: str = Field(index=True)
    company_id: int = Field(foreign_key="company.company_id", index=True)


class Role(SQLModel, table=True):
    """Named bundle of privileges defined at exactly one scope level."""

    __tablename__ = "roles"
    __table_args__ = (
        CheckConstraint(
            "(for_company IS NULL) <> (for_branch IS NULL)",
            name="ck_role_single_scope",
        ),
    )

    role_id: int | None = Field(default=None, primary_key=True)
    role_name: str = Field(index=True)
    for_company: int | None = Field(default=None, foreign_key="company.company_id")
    for_branch: int | None = Field(default=None, foreign_key="branches.branch_id")


class Privilege(SQLModel, table=True):
    __tablename__ = "privileges"

    privilege_id: int | None = Field(default=None, primary_key=True)
    privilege_name: str = Field(unique=True, index=True)


class RolePrivilege(SQLModel, table=True):
    __tablename__ = "role_privileges"

    role_id: int = Field(foreign_key="roles.role_id", primary_key=True)
    privilege_id: int = Field(foreign_key="privileges.privilege_id", primary_key=True)
