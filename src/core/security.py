from abc import ABC, abstractmethod
from functools import lru_cache
from typing import Any, Protocol

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.starlette_client import OAuth
from fastapi import Request, Response
from loguru import logger
from starlette.config import Config

from src.config.settings import settings
from src.core.errors import IdentityProviderError, InvalidProfile
from src.domain.access.profile import SsoProfile

GOOGLE_METADATA_URL = "https://accounts.google.com/.well-known/openid-configuration"
AZURE_METADATA_URL = "https://login.microsoftonline.com/{tenant}/v2.0/.well-known/openid-configuration"

# We bridge Pydantic settings to Starlette's Config interface expected by Authlib
config_data = {
    "GOOGLE_CLIENT_ID": settings.GOOGLE_CLIENT_ID,
    "GOOGLE_CLIENT_SECRET": settings.GOOGLE_CLIENT_SECRET,
    "AZURE_CLIENT_ID": settings.AZURE_CLIENT_ID,
    "AZURE_CLIENT_SECRET": settings.AZURE_CLIENT_SECRET,
}
starlette_config = Config(environ={k: v for k, v in config_data.items() if v is not None})

oauth = OAuth(starlette_config)

oauth.register(
    name="google",
    server_metadata_url=GOOGLE_METADATA_URL,
    client_kwargs={"scope": "openid email profile"},
)

oauth.register(
    name="azure",
    server_metadata_url=AZURE_METADATA_URL.format(tenant=settings.AZURE_TENANT_ID or "common"),
    client_kwargs={"scope": "openid email profile User.Read"},
)


def get_oauth() -> OAuth:
    """Retrieves the configured Authlib OAuth registry.

    Returns:
        OAuth: The registry holding the Google and Azure AD clients.
    """
    return oauth


class IdentityProvider(Protocol):
    """External SSO capability consumed by the resolution flow."""

    name: str

    async def authorize_redirect(self, request: Request, redirect_uri: str) -> Response: ...

    async def fetch_profile(self, request: Request) -> SsoProfile: ...


class OAuthIdentityProvider(ABC):
    """Authlib-backed provider. Subclasses map raw OIDC claims onto ``SsoProfile``."""

    name = "oauth"

    def __init__(self, client: Any) -> None:
        self.client = client

    async def authorize_redirect(self, request: Request, redirect_uri: str) -> Response:
        return await self.client.authorize_redirect(request, redirect_uri, prompt="select_account")

    async def fetch_profile(self, request: Request) -> SsoProfile:
        """Exchanges the authorization code and normalizes the returned claims.

        Args:
            request: The callback request carrying the authorization code.

        Returns:
            SsoProfile: The normalized identity assertion.

        Raises:
            IdentityProviderError: If the token exchange fails.
            InvalidProfile: If the provider returned no user info.
        """
        try:
            token = await self.client.authorize_access_token(request)
        except (OAuthError, httpx.HTTPError) as e:
            logger.error(f"{self.name} token exchange failed: {e}")
            raise IdentityProviderError() from e

        user_info = token.get("userinfo")
        if not user_info:
            logger.error(f"No userinfo in {self.name} token")
            raise InvalidProfile("No user info received")

        profile = self.normalize(dict(user_info))
        logger.info(f"Formatted {self.name} profile for {profile.email}: {profile.company_name} / {profile.office_location}")
        return profile

    @abstractmethod
    def normalize(self, claims: dict[str, Any]) -> SsoProfile:
        """Maps provider-specific OIDC claims onto the common profile."""


class GoogleIdentityProvider(OAuthIdentityProvider):
    name = "google"

    def normalize(self, claims: dict[str, Any]) -> SsoProfile:
        """Workspace accounts carry their domain in ``hd``; fall back to the email domain."""
        email = claims.get("email")
        domain = email.split("@", 1)[1] if email and "@" in email else None
        return SsoProfile(
            email=email,
            display_name=claims.get("name"),
            company_name=claims.get("hd") or domain or settings.DEFAULT_COMPANY_NAME,
            office_location=claims.get("officeLocation")
            or claims.get("department")
            or settings.DEFAULT_OFFICE_LOCATION,
        )


class AzureIdentityProvider(OAuthIdentityProvider):
    name = "azure"

    def normalize(self, claims: dict[str, Any]) -> SsoProfile:
        email = claims.get("email") or claims.get("preferred_username") or claims.get("upn")
        return SsoProfile(
            email=email,
            display_name=claims.get("name"),
            company_name=claims.get("companyName")
            or claims.get("organization")
            or claims.get("department")
            or settings.DEFAULT_COMPANY_NAME,
            office_location=claims.get("officeLocation")
            or claims.get("physicalDeliveryOfficeName")
            or claims.get("department")
            or settings.DEFAULT_OFFICE_LOCATION,
        )


PROVIDERS: dict[str, type[OAuthIdentityProvider]] = {
    "google": GoogleIdentityProvider,
    "azure": AzureIdentityProvider,
}


def build_identity_provider(provider_name: str, registry: OAuth | None = None) -> OAuthIdentityProvider:
    """Instantiates the provider selected by configuration.

    Raises:
        ValueError: If the provider name is not supported.
    """
    try:
        provider_cls = PROVIDERS[provider_name]
    except KeyError as e:
        raise ValueError(f"Unsupported SSO provider: {provider_name}") from e
    registry = registry or get_oauth()
    return provider_cls(registry.create_client(provider_name))


@lru_cache(maxsize=1)
def get_identity_provider() -> IdentityProvider:
    """Dependency returning the provider configured via ``SSO_PROVIDER``."""
    logger.info(f"SSO provider: {settings.SSO_PROVIDER}")
    return build_identity_provider(settings.SSO_PROVIDER)
