from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from loguru import logger
from sqlmodel.ext.asyncio.session import AsyncSession

from src.config.settings import settings
from src.core.database import get_session
from src.core.security import IdentityProvider, get_identity_provider
from src.domain.access.policy import Principal
from src.domain.access.sso import LoginStatus, SsoResolutionFlow

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _get_https_redirect_uri(request: Request, route_name: str) -> str:
    """Constructs a secure redirect URI, accounting for reverse proxies.

    Args:
        request: The incoming HTTP request.
        route_name: The name of the FastAPI route to resolve.

    Returns:
        str: The absolute URL with the correct scheme.
    """
    redirect_uri = str(request.url_for(route_name))
    if request.headers.get("x-forwarded-proto") == "https":
        redirect_uri = redirect_uri.replace("http://", "https://", 1)
    return redirect_uri


def get_sso_flow(
    session: Annotated[AsyncSession, Depends(get_session)],
    identity_provider: Annotated[IdentityProvider, Depends(get_identity_provider)],
) -> SsoResolutionFlow:
    return SsoResolutionFlow(session, identity_provider)


@router.get("/login")
async def login(
    request: Request, identity_provider: Annotated[IdentityProvider, Depends(get_identity_provider)]
) -> Response:
    """Initiates the OAuth2 flow against the configured provider.

    Args:
        request: The incoming HTTP request.
        identity_provider: The Google or Azure AD provider.

    Returns:
        Response: Redirection to the provider's authorization endpoint.
    """
    redirect_uri = _get_https_redirect_uri(request, "auth_callback")
    return await identity_provider.authorize_redirect(request, redirect_uri)


@router.get("/callback", name="auth_callback")
async def auth_callback(request: Request, flow: Annotated[SsoResolutionFlow, Depends(get_sso_flow)]) -> RedirectResponse:
    """Provider callback. Classifies the identity and opens a session on success.

    Args:
        request: The incoming HTTP request containing the authorization code.
        flow: The SSO resolution flow bound to this request's database session.

    Returns:
        RedirectResponse: Redirection to the application root upon success.

    Raises:
        HTTPException: 403 while access is pending, rejected or revoked; 400 when
            the organization cannot be resolved.
    """
    outcome = await flow.authenticate(request)

    if outcome.granted:
        request.session.pop("access", None)
        request.session["principal"] = outcome.principal.to_session()
        logger.info(f"User logged in: {outcome.email}")
        return RedirectResponse(url="/")

    request.session.pop("principal", None)
    request.session["access"] = outcome.to_session()

    if outcome.status == LoginStatus.DIRECTORY_ERROR:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=outcome.message)

    logger.warning(f"Blocked login for {outcome.email}: {outcome.status}")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=outcome.message)


@router.get("/status")
async def auth_status(request: Request) -> dict[str, Any]:
    """Reports the current session: the principal if logged in, else the last access state."""
    principal = Principal.from_session(request.session.get("principal"))
    return {
        "authenticated": principal is not None,
        "provider": settings.SSO_PROVIDER,
        "principal": principal.to_session() if principal else None,
        "access": request.session.get("access"),
    }


@router.get("/logout")
async def logout(request: Request) -> RedirectResponse:
    """Clears the session.

    Args:
        request: The incoming HTTP request.

    Returns:
        RedirectResponse: Redirection to the application root.
    """
    request.session.clear()
    return RedirectResponse(url="/")
