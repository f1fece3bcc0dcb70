from dataclasses import dataclass
from enum import StrEnum

from fastapi import Request
from loguru import logger
from sqlmodel.ext.asyncio.session import AsyncSession

from src.core.errors import DirectoryLookupError
from src.core.security import IdentityProvider
from src.domain.access.policy import Principal
from src.domain.access.profile import SsoProfile
from src.domain.directory.store import DirectoryStore
from src.domain.requests.ledger import PermissionLedger
from src.domain.requests.models import RequestStatus
from src.domain.users.models import User, UserStatus
from src.domain.users.registry import UserRegistry


class LoginStatus(StrEnum):
    SUCCESS = "success"
    PENDING = "pending"
    REJECTED = "rejected"
    REVOKED = "revoked"
    UNKNOWN_STATUS = "unknown_status"
    DIRECTORY_ERROR = "directory_error"


MESSAGES: dict[LoginStatus, str] = {
    LoginStatus.SUCCESS: "User exists in the system",
    LoginStatus.PENDING: "Your login was successful, but your request is pending approval",
    LoginStatus.REJECTED: (
        "Your approval request has been rejected. "
        "Please contact the administrator for more information."
    ),
    LoginStatus.REVOKED: "Your access has been revoked. Please contact the administrator.",
    LoginStatus.UNKNOWN_STATUS: "Your account status is unknown. Please contact the administrator.",
}


@dataclass(frozen=True)
class LoginOutcome:
    """Classification of one login attempt."""

    status: LoginStatus
    message: str
    email: str
    principal: Principal | None = None
    request_id: int | None = None

    @property
    def granted(self) -> bool:
        return self.status == LoginStatus.SUCCESS and self.principal is not None

    def to_session(self) -> dict:
        """Non-sensitive summary stored for the access-state page."""
        return {"status": self.status.value, "message": self.message, "email": self.email}


class SsoResolutionFlow:
    """Turns an SSO identity into a session principal or a request-queue state.

    Example:
        flow = SsoResolutionFlow(session, get_identity_provider())
        outcome = await flow.authenticate(request)
    """

    def __init__(self, session: AsyncSession, identity_provider: IdentityProvider | None = None) -> None:
        self.session = session
        self.identity_provider = identity_provider
        self.directory = DirectoryStore(session)
        self.ledger = PermissionLedger(session, self.directory)
        self.registry = UserRegistry(session, self.directory)

    async def authenticate(self, request: Request) -> LoginOutcome:
        """Completes the provider callback and classifies the resulting profile.

        Raises:
            IdentityProviderError: If the provider exchange fails.
            InvalidProfile: If the profile carries no email.
        """
        if self.identity_provider is None:
            raise RuntimeError("SsoResolutionFlow.authenticate requires an identity provider")
        profile = await self.identity_provider.fetch_profile(request)
        return await self.resolve(profile)

    async def resolve(self, profile: SsoProfile) -> LoginOutcome:
        """Classifies a normalized profile against the users and requests tables.

        Re-running for the same email and state yields the same classification
        and never enqueues a second request.

        Args:
            profile: The identity assertion from the provider.

        Returns:
            LoginOutcome: The classification, with a principal on success.

        Raises:
            InvalidProfile: If the profile carries no email.
        """
        email = profile.require_email()

        user = await self.registry.find_by_email(email)
        if user:
            return await self._classify_user(user)

        request = await self.ledger.get_by_email(email)
        if request is None:
            try:
                request = await self.ledger.create(profile)
            except DirectoryLookupError as e:
                logger.warning(f"Login for {email} blocked by directory lookup: {e.message}")
                return LoginOutcome(LoginStatus.DIRECTORY_ERROR, e.message, email)
            return self._outcome(LoginStatus.PENDING, email, request_id=request.request_id)

        if request.u_status == RequestStatus.PENDING:
            return self._outcome(LoginStatus.PENDING, email, request_id=request.request_id)
        if request.u_status == RequestStatus.APPROVED:
            user = await self.ledger.materialize(request)
            return await self._grant(user)
        if request.u_status == RequestStatus.REJECTED:
            return self._outcome(LoginStatus.REJECTED, email, request_id=request.request_id)
        if request.u_status == RequestStatus.REVOKED:
            return self._outcome(LoginStatus.REVOKED, email, request_id=request.request_id)

        logger.warning(f"Request #{request.request_id} for {email} is {request.u_status} with no user row")
        return self._outcome(LoginStatus.UNKNOWN_STATUS, email, request_id=request.request_id)

    async def _classify_user(self, user: User) -> LoginOutcome:
        if user.u_status == UserStatus.ACTIVE:
            return await self._grant(user)
        if user.u_status == UserStatus.REVOKED:
            return self._outcome(LoginStatus.REVOKED, user.email)
        return self._outcome(LoginStatus.UNKNOWN_STATUS, user.email)

    async def _grant(self, user: User) -> LoginOutcome:
        principal = await self.build_principal(user)
        logger.info(f"Login granted for {user.email} ({principal.role_name}, {len(principal.privileges)} privileges)")
        return LoginOutcome(LoginStatus.SUCCESS, MESSAGES[LoginStatus.SUCCESS], user.email, principal=principal)

    async def build_principal(self, user: User) -> Principal:
        """Resolves the user's role name and privilege set once, at session start."""
        return Principal(
            user_id=user.user_id,
            email=user.email,
            display_name=user.display_name,
            company_id=user.company_id,
            branch_id=user.branch_id,
            role_id=user.role_id,
            role_name=await self.directory.role_name(user.role_id),
            privileges=await self.directory.privileges_for_role(user.role_id),
        )

    @staticmethod
    def _outcome(status: LoginStatus, email: str, request_id: int | None = None) -> LoginOutcome:
        logger.info(f"Login for {email}: {status}")
        return LoginOutcome(status, MESSAGES[status], email, request_id=request_id)
