"""Scoped authorization for every listing and mutation in the access core.

The evaluator is a pure function of (principal, privilege, target). It never
touches the database: privileges are resolved once when the session starts and
travel with the principal.
"""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol

from loguru import logger

from src.config.settings import settings
from src.core.errors import Forbidden, NoActiveUser


class PrivilegeName(StrEnum):
    """Closed catalogue of capabilities a role may grant."""

    LIST_REQUESTS = "list_requests"
    UPDATE_REQUESTS = "update_requests"
    VIEW_APPROVED_REQUESTS = "view_approved_requests"
    VIEW_REJECTED_REQUESTS = "view_rejected_requests"
    LIST_ACTIVE_USERS = "list_active_users"
    LIST_REVOKED_USERS = "list_revoked_users"
    REVOKE_USER = "revoke_user"
    REACTIVATE_USER = "reactivate_user"
    UPDATE_USERS = "update_users"
    ASSIGN_BRANCH = "assign_branch"
    ASSIGN_ROLE = "assign_role"
    ADD_USERS = "add_users"


class DenyReason(StrEnum):
    UNAUTHENTICATED = "unauthenticated"
    MISSING_PRIVILEGE = "missing_privilege"
    OUT_OF_SCOPE = "out_of_scope"


class ScopedEntity(Protocol):
    """Anything that lives inside a company and branch (users, requests, branches)."""

    company_id: Any
    branch_id: Any


@dataclass(frozen=True)
class Scope:
    """Visibility boundary. ``branch_id`` is None for company-wide scope."""

    company_id: int
    branch_id: int | None = None

    @property
    def is_company_wide(self) -> bool:
        return self.branch_id is None

    def contains(self, company_id: int | None, branch_id: int | None) -> bool:
        if company_id != self.company_id:
            return False
        return self.branch_id is None or branch_id == self.branch_id


@dataclass(frozen=True)
class Principal:
    """The authenticated actor of a session."""

    user_id: int
    email: str
    display_name: str
    company_id: int
    branch_id: int | None
    role_id: int | None = None
    role_name: str | None = None
    privileges: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_admin(self) -> bool:
        return self.role_name == settings.ADMIN_ROLE_NAME

    @property
    def scope(self) -> Scope:
        # Administrators act company-wide; every other role is pinned to its branch
        if self.is_admin:
            return Scope(company_id=self.company_id)
        return Scope(company_id=self.company_id, branch_id=self.branch_id)

    def to_session(self) -> dict[str, Any]:
        """Serializes the principal into a JSON-safe dict for the signed session cookie."""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "display_name": self.display_name,
            "company_id": self.company_id,
            "branch_id": self.branch_id,
            "role_id": self.role_id,
            "role_name": self.role_name,
            "privileges": sorted(self.privileges),
        }

    @classmethod
    def from_session(cls, data: dict[str, Any] | None) -> "Principal | None":
        if not data or data.get("user_id") is None:
            return None
        return cls(
            user_id=data["user_id"],
            email=data["email"],
            display_name=data.get("display_name", ""),
            company_id=data["company_id"],
            branch_id=data.get("branch_id"),
            role_id=data.get("role_id"),
            role_name=data.get("role_name"),
            privileges=frozenset(data.get("privileges", [])),
        )


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: DenyReason | None = None
    scope: Scope | None = None


def _target_coordinates(target: ScopedEntity | Scope | None) -> tuple[int | None, int | None] | None:
    if target is None:
        return None
    return target.company_id, target.branch_id


def evaluate(
    principal: Principal | None,
    privilege: PrivilegeName | str | None,
    target: ScopedEntity | Scope | None = None,
) -> Decision:
    """Decides whether ``principal`` may exercise ``privilege`` on ``target``.

    A ``privilege`` of None only requires an authenticated principal. A
    ``target`` of None checks the capability alone; the returned scope then
    tells the caller which rows it may see.

    Args:
        principal: The session principal, or None when no active user is bound.
        privilege: The named capability the operation is gated on.
        target: The entity being read or mutated.

    Returns:
        Decision: Allow with the granted scope, or deny with a reason.
    """
    if principal is None:
        return Decision(allowed=False, reason=DenyReason.UNAUTHENTICATED)

    scope = principal.scope

    if privilege is not None and not principal.is_admin and str(privilege) not in principal.privileges:
        return Decision(allowed=False, reason=DenyReason.MISSING_PRIVILEGE, scope=scope)

    coordinates = _target_coordinates(target)
    if coordinates is not None and not scope.contains(*coordinates):
        return Decision(allowed=False, reason=DenyReason.OUT_OF_SCOPE, scope=scope)

    return Decision(allowed=True, scope=scope)


def authorize(
    principal: Principal | None,
    privilege: PrivilegeName | str | None,
    target: ScopedEntity | Scope | None = None,
) -> Scope:
    """Raising variant of :func:`evaluate` used in front of every core operation.

    Returns:
        Scope: The visibility boundary granted to the principal.

    Raises:
        NoActiveUser: If there is no principal.
        Forbidden: If the privilege is missing or the target lies outside the scope.
    """
    decision = evaluate(principal, privilege, target)
    if decision.allowed and decision.scope is not None:
        return decision.scope

    if decision.reason == DenyReason.UNAUTHENTICATED:
        raise NoActiveUser()

    logger.warning(
        f"Denied '{privilege}' for {principal.email if principal else '?'}: {decision.reason}"
    )
    if decision.reason == DenyReason.OUT_OF_SCOPE:
        area = "company" if decision.scope and decision.scope.is_company_wide else "branch"
        raise Forbidden(f"You can only manage records from your {area}", privilege=str(privilege))
    raise Forbidden(f"You do not have the '{privilege}' privilege", privilege=str(privilege))
