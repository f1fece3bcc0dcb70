import time
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger
from sqlmodel import SQLModel
from starlette.middleware.sessions import SessionMiddleware

from src import version
from src.app.admin import router as admin_router
from src.config.settings import settings
from src.core.database import async_session_maker, engine
from src.core.errors import AccessError
from src.core.logger import configure_logging
from src.domain.access.policy import Principal
from src.domain.directory import models as directory_models  # noqa: F401
from src.domain.directory.store import DirectoryStore
from src.domain.requests import models as request_models  # noqa: F401
from src.domain.users import models as user_models  # noqa: F401
from src.domain.users.router import router as auth_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manages the startup and shutdown lifecycle of the FastAPI application."""
    configure_logging()

    # Initialize SQLite schema
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    async with async_session_maker() as session:
        await DirectoryStore(session).ensure_privileges()

    yield

    await engine.dispose()


# --- Application Setup ---
app = FastAPI(
    title=settings.APP_NAME,
    debug=settings.DEBUG,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url=None,
)

# --- Middleware ---
# SessionMiddleware holds both the Authlib OAuth state and the principal
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.SECRET_KEY,
    max_age=settings.SESSION_MAX_AGE,
    https_only=not settings.DEBUG,
    same_site="lax",
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next: Callable[[Request], Awaitable[Response]]) -> Response:
    """Injects a unique Request-ID into the logging context and response headers.

    Args:
        request: The incoming HTTP request.
        call_next: The next middleware or route handler in the pipeline.

    Returns:
        Response: The HTTP response with injected tracking headers.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id

    with logger.contextualize(request_id=request_id):
        logger.info(f"Started {request.method} {request.url.path}")
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.perf_counter() - start_time
            logger.error(f"Request failed after {process_time:.4f}s: {e}")
            raise

        process_time = time.perf_counter() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)
        logger.info(f"Completed {response.status_code} in {process_time:.4f}s")
        return response


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or request.headers.get("X-Request-ID", "unknown")


# --- Exception Handlers ---
@app.exception_handler(AccessError)
async def access_error_handler(request: Request, exc: AccessError) -> JSONResponse:
    """Translates domain errors into their JSON payload and status code.

    Args:
        request: The incoming HTTP request.
        exc: The raised domain error.

    Returns:
        JSONResponse: ``{"error", "message", "details"?, "request_id"}``.
    """
    if exc.status_code >= status.HTTP_500_INTERNAL_SERVER_ERROR:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={**exc.to_dict(), "request_id": _request_id(request)},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catches unhandled exceptions and returns a standardized JSON response.

    Args:
        request: The incoming HTTP request.
        exc: The raised exception.

    Returns:
        JSONResponse: A 500 Internal Server Error payload.
    """
    logger.exception("Unhandled server exception")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "An unexpected error occurred.",
            "request_id": _request_id(request),
        },
    )


# --- Routing ---
app.include_router(auth_router)
app.include_router(admin_router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Provides a basic health check for the application.

    Returns:
        dict: The application status and name.
    """
    return {
        "status": "ok",
        "service": settings.APP_NAME,
        "version": version.VERSION,
        "build_time": version.BUILD_TIMESTAMP,
    }


@app.get("/")
async def home(request: Request) -> Response:
    """Root endpoint that routes users based on authentication state."""
    if Principal.from_session(request.session.get("principal")):
        return RedirectResponse(url="/api/stats/sidebar", status_code=status.HTTP_303_SEE_OTHER)

    # Anonymous users with a recorded access state see it instead of looping through SSO
    if request.session.get("access"):
        return RedirectResponse(url="/auth/status", status_code=status.HTTP_303_SEE_OTHER)

    return RedirectResponse(url="/auth/login", status_code=status.HTTP_303_SEE_OTHER)
