import unittest

from src.core.errors import BranchNotFound, Conflict, Forbidden, NoActiveUser, UserNotFound
from src.domain.access.policy import PrivilegeName
from src.domain.requests.models import RequestStatus
from src.domain.users.models import UserCreate, UserPatch, UserStatus
from src.domain.users.registry import UserRegistry
from tests.base import BaseTest


class TestRegistryListings(BaseTest):
    """Test suite for scoped user listings and counters."""

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.registry = UserRegistry(self.session)
        await self.make_user("hq@x.com")
        await self.make_user("remote@x.com", branch=self.remote, role=self.remote_user_role)
        await self.make_user("globex@x.com", branch=self.springfield, role=self.globex_admin_role)
        await self.make_user("gone@x.com", status=UserStatus.REVOKED)

    async def test_admin_lists_all_company_users(self) -> None:
        rows = await self.registry.list_active(self.admin_principal())

        self.assertEqual({u.email for u in rows}, {"hq@x.com", "remote@x.com"})

    async def test_branch_principal_lists_own_branch_only(self) -> None:
        manager = self.manager_principal([PrivilegeName.LIST_ACTIVE_USERS, PrivilegeName.LIST_REVOKED_USERS])

        active = await self.registry.list_active(manager)
        revoked = await self.registry.list_revoked(manager)

        self.assertEqual([u.email for u in active], ["hq@x.com"])
        self.assertEqual([u.email for u in revoked], ["gone@x.com"])

    async def test_listings_require_privileges(self) -> None:
        manager = self.manager_principal()

        with self.assertRaises(Forbidden):
            await self.registry.list_active(manager)
        with self.assertRaises(Forbidden):
            await self.registry.list_revoked(manager)
        with self.assertRaises(NoActiveUser):
            await self.registry.list_active(None)

    async def test_counts(self) -> None:
        manager = self.manager_principal()

        self.assertEqual(await self.registry.count(manager, UserStatus.ACTIVE), 1)
        self.assertEqual(await self.registry.count(self.admin_principal(), UserStatus.ACTIVE), 2)
        self.assertEqual(await self.registry.count(self.admin_principal(), UserStatus.REVOKED), 1)
        with self.assertRaises(Forbidden):
            await self.registry.count(manager, UserStatus.REVOKED)


class TestRegistryMutations(BaseTest):
    """Test suite for revoke, reactivate and update."""

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.registry = UserRegistry(self.session)
        self.user = await self.make_user("u@x.com", branch=self.remote, role=self.remote_user_role)

    async def test_revoke_without_privilege_changes_nothing(self) -> None:
        manager = self.manager_principal([PrivilegeName.LIST_ACTIVE_USERS], branch=self.remote)

        with self.assertRaises(Forbidden):
            await self.registry.revoke(self.user.user_id, manager)

        self.assertEqual((await self.fetch_user("u@x.com")).u_status, UserStatus.ACTIVE)

    async def test_revoke_out_of_branch_is_forbidden(self) -> None:
        manager = self.manager_principal([PrivilegeName.REVOKE_USER])

        with self.assertRaises(Forbidden):
            await self.registry.revoke(self.user.user_id, manager)

    async def test_revoke_unknown_user(self) -> None:
        with self.assertRaises(UserNotFound):
            await self.registry.revoke(9999, self.admin_principal())

    async def test_revoke_then_reactivate_preserves_assignment(self) -> None:
        admin = self.admin_principal()

        await self.registry.revoke(self.user.user_id, admin)
        self.assertEqual((await self.fetch_user("u@x.com")).u_status, UserStatus.REVOKED)

        await self.registry.reactivate(self.user.user_id, None, admin)

        stored = await self.fetch_user("u@x.com")
        self.assertEqual(stored.u_status, UserStatus.ACTIVE)
        self.assertEqual(stored.branch_id, self.remote.branch_id)
        self.assertEqual(stored.role_id, self.remote_user_role.role_id)

    async def test_reactivate_with_reassignment(self) -> None:
        admin = self.admin_principal()
        await self.registry.revoke(self.user.user_id, admin)

        await self.registry.reactivate(
            self.user.user_id, UserPatch(branch_id=self.hq.branch_id, role_id=self.admin_role.role_id), admin
        )

        stored = await self.fetch_user("u@x.com")
        self.assertEqual(stored.branch_id, self.hq.branch_id)
        self.assertEqual(stored.role_id, self.admin_role.role_id)

    async def test_update_display_name_and_role(self) -> None:
        manager = self.manager_principal(
            [PrivilegeName.UPDATE_USERS, PrivilegeName.ASSIGN_ROLE], branch=self.remote
        )

        with self.assertRaises(Forbidden):
            # Branch-owned roles belong to the manager's branch only
            await self.registry.update(self.user.user_id, UserPatch(role_id=self.hq_user_role.role_id), manager)

        updated = await self.registry.update(self.user.user_id, UserPatch(display_name="  Ursula "), self.admin_principal())
        self.assertEqual(updated.display_name, "Ursula")

    async def test_update_branch_needs_assign_branch(self) -> None:
        manager = self.manager_principal([PrivilegeName.UPDATE_USERS], branch=self.remote)

        with self.assertRaises(Forbidden):
            await self.registry.update(self.user.user_id, UserPatch(branch_id=self.hq.branch_id), manager)

        self.assertEqual((await self.fetch_user("u@x.com")).branch_id, self.remote.branch_id)


class TestRegistryCreate(BaseTest):
    """Test suite for direct administrator inserts."""

    async def asyncSetUp(self) -> None:
        await super().asyncSetUp()
        self.registry = UserRegistry(self.session)

    def payload(self, email: str = "new@x.com", **overrides) -> UserCreate:
        data = {
            "display_name": "New Person",
            "email": email,
            "branch_id": self.hq.branch_id,
            "role_id": self.admin_role.role_id,
        }
        data.update(overrides)
        return UserCreate(**data)

    async def test_admin_adds_user(self) -> None:
        user = await self.registry.create(self.payload(), self.admin_principal())

        self.assertEqual(user.u_status, UserStatus.ACTIVE)
        self.assertEqual(user.company_id, self.acme.company_id)
        self.assertEqual(user.assigned_by, 1000)

    async def test_duplicate_email_conflicts(self) -> None:
        await self.make_user("new@x.com")

        with self.assertRaises(Conflict):
            await self.registry.create(self.payload(), self.admin_principal())

    async def test_unknown_branch(self) -> None:
        with self.assertRaises(BranchNotFound):
            await self.registry.create(self.payload(branch_id=9999), self.admin_principal())

    async def test_admin_cannot_add_into_other_company(self) -> None:
        with self.assertRaises(Forbidden):
            await self.registry.create(self.payload(branch_id=self.springfield.branch_id), self.admin_principal())

    async def test_branch_principal_needs_add_and_assign(self) -> None:
        payload = self.payload(role_id=self.hq_user_role.role_id)

        with self.assertRaises(Forbidden):
            await self.registry.create(payload, self.manager_principal([PrivilegeName.ADD_USERS]))

        manager = self.manager_principal([PrivilegeName.ADD_USERS, PrivilegeName.ASSIGN_ROLE])
        user = await self.registry.create(payload, manager)
        self.assertEqual(user.branch_id, self.hq.branch_id)

    async def test_branch_principal_cannot_add_into_sibling_branch(self) -> None:
        manager = self.manager_principal([PrivilegeName.ADD_USERS, PrivilegeName.ASSIGN_ROLE])

        with self.assertRaises(Forbidden):
            await self.registry.create(
                self.payload(branch_id=self.remote.branch_id, role_id=self.remote_user_role.role_id), manager
            )

    async def test_direct_add_closes_open_request(self) -> None:
        await self.make_request("new@x.com")

        await self.registry.create(self.payload(), self.admin_principal())

        self.assertEqual((await self.fetch_request("new@x.com")).u_status, RequestStatus.PROCESSED)
        self.assertEqual((await self.fetch_user("new@x.com")).u_status, UserStatus.ACTIVE)

    async def test_direct_add_leaves_rejected_request_alone(self) -> None:
        await self.make_request("new@x.com", status=RequestStatus.REJECTED)

        await self.registry.create(self.payload(), self.admin_principal())

        self.assertEqual((await self.fetch_request("new@x.com")).u_status, RequestStatus.REJECTED)


if __name__ == "__main__":
    unittest.main()
