import unittest
from unittest.mock import AsyncMock, MagicMock

from fastapi import HTTPException
from fastapi.responses import RedirectResponse
from starlette.datastructures import URL

from src.domain.access.policy import Principal
from src.domain.access.sso import MESSAGES, LoginOutcome, LoginStatus
from src.domain.users.router import auth_callback, auth_status, login, logout


class TestUsersRouter(unittest.IsolatedAsyncioTestCase):
    """Test suite for the SSO callback and session management."""

    def setUp(self) -> None:
        """Initializes mock HTTP requests and the resolution flow."""
        self.mock_request = MagicMock()
        self.mock_request.session = {}
        # Ensure _get_https_redirect_uri formats correctly
        self.mock_request.url_for.return_value = URL("http://gateway.local/auth/callback")
        self.mock_request.headers = {"x-forwarded-proto": "https"}

        self.mock_flow = MagicMock()
        self.principal = Principal(
            user_id=7,
            email="ann@acme.com",
            display_name="Ann",
            company_id=1,
            branch_id=2,
            role_id=3,
            role_name="System user",
            privileges=frozenset({"list_requests"}),
        )

    def outcome(self, status: LoginStatus, principal: Principal | None = None) -> LoginOutcome:
        return LoginOutcome(status, MESSAGES.get(status, "Office 'Mars' is not registered."), "ann@acme.com", principal)

    async def test_login_redirects_to_provider(self) -> None:
        """Verifies the /login endpoint builds an https callback URL for the provider."""
        provider = MagicMock()
        provider.authorize_redirect = AsyncMock(return_value=RedirectResponse(url="https://accounts.google.com/auth"))

        response = await login(self.mock_request, provider)

        self.assertEqual(response.headers["location"], "https://accounts.google.com/auth")
        provider.authorize_redirect.assert_awaited_once_with(self.mock_request, "https://gateway.local/auth/callback")

    async def test_callback_success_stores_principal(self) -> None:
        self.mock_request.session["access"] = {"status": "pending"}
        self.mock_flow.authenticate = AsyncMock(return_value=self.outcome(LoginStatus.SUCCESS, self.principal))

        response = await auth_callback(self.mock_request, self.mock_flow)

        self.assertIsInstance(response, RedirectResponse)
        self.assertEqual(response.headers["location"], "/")
        self.assertEqual(self.mock_request.session["principal"]["user_id"], 7)
        self.assertEqual(self.mock_request.session["principal"]["privileges"], ["list_requests"])
        self.assertNotIn("access", self.mock_request.session)

    async def test_callback_blocked_states_raise_403(self) -> None:
        for status in (LoginStatus.PENDING, LoginStatus.REJECTED, LoginStatus.REVOKED, LoginStatus.UNKNOWN_STATUS):
            with self.subTest(status=status):
                self.mock_request.session = {"principal": {"user_id": 1}}
                self.mock_flow.authenticate = AsyncMock(return_value=self.outcome(status))

                with self.assertRaises(HTTPException) as ctx:
                    await auth_callback(self.mock_request, self.mock_flow)

                self.assertEqual(ctx.exception.status_code, 403)
                self.assertEqual(ctx.exception.detail, MESSAGES[status])
                self.assertNotIn("principal", self.mock_request.session)
                self.assertEqual(self.mock_request.session["access"]["status"], status.value)

    async def test_callback_directory_error_raises_400(self) -> None:
        self.mock_flow.authenticate = AsyncMock(return_value=self.outcome(LoginStatus.DIRECTORY_ERROR))

        with self.assertRaises(HTTPException) as ctx:
            await auth_callback(self.mock_request, self.mock_flow)

        self.assertEqual(ctx.exception.status_code, 400)
        self.assertIn("Mars", ctx.exception.detail)

    async def test_status_reports_session(self) -> None:
        anonymous = await auth_status(self.mock_request)
        self.assertFalse(anonymous["authenticated"])

        self.mock_request.session["principal"] = self.principal.to_session()
        logged_in = await auth_status(self.mock_request)
        self.assertTrue(logged_in["authenticated"])
        self.assertEqual(logged_in["principal"]["email"], "ann@acme.com")

    async def test_logout_clears_session(self) -> None:
        self.mock_request.session = {"principal": self.principal.to_session(), "access": {}}

        response = await logout(self.mock_request)

        self.assertEqual(self.mock_request.session, {})
        self.assertEqual(response.headers["location"], "/")


if __name__ == "__main__":
    unittest.main()
