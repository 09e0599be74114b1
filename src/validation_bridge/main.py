# src/validation_bridge/main.py

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import AliasChoices, BaseModel, Field

from . import __version__, config, oauth_flow
from .config import Settings
from .domains import resolve_login_domain
from .errors import BridgeError
from .guard import get_salesforce_client, require_salesforce_session
from .logging_config import configure_logging
from .salesforce import SalesforceClient, SalesforceCredentials
from .security import (
    OriginAllowListMiddleware,
    RateLimiter,
    RateLimitMiddleware,
    SecurityHeadersMiddleware,
)
from .session_data import SessionData
from .session_store import SessionStore, create_session_store
from .sessions import SessionManager, SessionMiddleware

log = logging.getLogger(__name__)

router = APIRouter()


class ToggleRequest(BaseModel):
    id: str = Field(..., min_length=1, validation_alias=AliasChoices("id", "Id", "ruleId"))
    # The active value the caller last saw; the rule is set to its negation
    active: Optional[bool] = Field(default=None, validation_alias=AliasChoices("active", "Active"))


def _frontend_redirect(settings: Settings, **params: str) -> RedirectResponse:
    return RedirectResponse(
        url=f"{settings.FRONTEND_URL}/?{urlencode(params)}",
        status_code=status.HTTP_302_FOUND,
    )


def _session(request: Request) -> SessionData:
    return getattr(request.state, "session", None) or SessionData()


# --- Health ---
@router.get("/health")
async def health(request: Request):
    settings: Settings = request.app.state.settings
    store: Optional[SessionStore] = request.app.state.session_store

    redis_status = "not_configured"
    healthy = store is not None
    if store is not None and store.backend == "redis":
        redis_connected = await store.ping()
        redis_status = "connected" if redis_connected else "disconnected"
        healthy = redis_connected

    return JSONResponse(
        status_code=status.HTTP_200_OK if healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "status": "ok" if healthy else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "environment": settings.ENVIRONMENT,
            "sessionStore": store.backend if store is not None else "uninitialized",
            "redis": redis_status,
            "uptime": round(time.monotonic() - request.app.state.started_at, 3),
        },
    )


# --- Authentication Routes ---
@router.get("/login")
async def login(request: Request, domain: Optional[str] = None, customDomain: Optional[str] = None):
    settings: Settings = request.app.state.settings
    sessions: SessionManager = request.app.state.sessions

    # Raises ValidationError (400 JSON) before any redirect
    login_domain = resolve_login_domain(domain, customDomain, settings.CUSTOM_DOMAIN_SUFFIX)
    pending, auth_url = oauth_flow.begin_login(settings, login_domain)

    request.state.session = pending
    # The callback can only complete if this write landed
    await sessions.save(request)

    log.info("Redirecting to Salesforce login (%s)", login_domain.type.value)
    return RedirectResponse(url=auth_url, status_code=status.HTTP_302_FOUND)


@router.get("/oauth/callback")
async def oauth_callback(
        request: Request,
        code: Optional[str] = None,
        state: Optional[str] = None,
        error: Optional[str] = None,
        error_description: Optional[str] = None,
):
    settings: Settings = request.app.state.settings

    settle = asyncio.ensure_future(_settle_callback(request, code, state, error, error_description))
    try:
        # The exchange runs to the end even if the browser goes away meanwhile
        error_message = await asyncio.shield(settle)
    except asyncio.CancelledError:
        log.info("Client disconnected during OAuth callback; finishing login in the background")
        settle.add_done_callback(_report_abandoned_callback)
        raise

    if error_message:
        return _frontend_redirect(settings, error=error_message)
    await request.app.state.sessions.rotate(request)
    return _frontend_redirect(settings, success="1")


async def _settle_callback(
        request: Request,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str],
        error_description: Optional[str],
) -> Optional[str]:
    """Complete or fail the pending login; returns the error message, or None on success.

    Everything that has to happen whether or not the browser is still there
    lives here, the reset to anonymous on failure included. The authenticated
    record is written under the current session id with ``id_rotation_pending``
    set; the id changes once a response can carry the new cookie.
    """
    settings: Settings = request.app.state.settings
    sessions: SessionManager = request.app.state.sessions
    try:
        code = oauth_flow.check_callback_params(code, error, error_description)
        authenticated = await oauth_flow.complete_login(
            request.app.state.http_client, settings, _session(request), code, state,
        )
        authenticated.id_rotation_pending = True
        request.state.session = authenticated
        await sessions.save(request)
        return None
    except BridgeError as e:
        log.warning("OAuth callback failed (%s): %s", e.code, e.message)
        await sessions.discard(request)
        return e.message
    except Exception:
        log.exception("Unexpected error during OAuth callback")
        await sessions.discard(request)
        return "Authentication failed"


def _report_abandoned_callback(task: "asyncio.Future[Optional[str]]") -> None:
    if task.cancelled():
        log.warning("Abandoned OAuth callback was cancelled before it finished")
    elif task.exception() is not None:
        log.error("Abandoned OAuth callback crashed", exc_info=task.exception())
    elif task.result():
        log.info("Abandoned OAuth callback failed: %s", task.result())
    else:
        log.info("Abandoned OAuth callback completed; session id rotates on the next request")


@router.post("/logout")
async def logout(request: Request):
    username = _session(request).username or "User"
    await request.app.state.sessions.destroy(request)
    log.info("User logged out: %s", username)
    return {"success": True, "message": "Logged out successfully"}


@router.get("/logout")
async def logout_redirect(request: Request):
    await request.app.state.sessions.discard(request)
    return _frontend_redirect(request.app.state.settings, logout="success")


# --- API Endpoints (called by the front end) ---
@router.get("/api/auth/status")
async def auth_status(request: Request):
    session = _session(request)
    if not session.is_authenticated:
        return {"authenticated": False, "username": None, "instanceUrl": None}
    return {"authenticated": True, "username": session.username, "instanceUrl": session.instance_url}


@router.get("/api/user")
async def user_info(request: Request, creds: SalesforceCredentials = Depends(require_salesforce_session)):
    session = _session(request)
    return {
        "username": session.username,
        "email": session.email,
        "userType": session.user_type,
        "instanceUrl": creds.instance_url,
        "domainType": session.domain_type.value if session.domain_type else None,
        "organizationId": session.organization_id,
        "userId": session.user_id,
        "displayName": session.display_name,
        "authenticatedAt": session.authenticated_at,
    }


@router.get("/api/validation-rules")
async def list_validation_rules(
        creds: SalesforceCredentials = Depends(require_salesforce_session),
        salesforce: SalesforceClient = Depends(get_salesforce_client),
):
    rules = await salesforce.list_validation_rules(creds)
    return [rule.model_dump(by_alias=True) for rule in rules]


@router.post("/api/validation-toggle")
async def toggle_validation_rule(
        body: ToggleRequest,
        creds: SalesforceCredentials = Depends(require_salesforce_session),
        salesforce: SalesforceClient = Depends(get_salesforce_client),
):
    result = await salesforce.toggle_validation_rule(creds, body.id, body.active)
    return result.model_dump()


# --- Error handlers ---
async def bridge_error_handler(request: Request, exc: BridgeError):
    if exc.status_code >= 500:
        log.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request.") if errors else "Invalid request."
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": message, "code": "VALIDATION_ERROR"},
    )


async def unhandled_error_handler(request: Request, exc: Exception):
    log.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "Internal server error", "code": "INTERNAL_ERROR"},
    )


# --- Application lifecycle ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    # Also reached when started as `uvicorn validation_bridge.main:app`
    configure_logging(settings.EFFECTIVE_LOG_LEVEL)
    log.info("--- Salesforce Validation Bridge starting (%s) ---", settings.ENVIRONMENT)
    log.info("Redirect URI: %s", settings.REDIRECT_URI)
    log.info("Frontend URL: %s", settings.FRONTEND_URL)

    owned_store: Optional[SessionStore] = None
    owned_client: Optional[httpx.AsyncClient] = None
    if app.state.session_store is None:
        owned_store = app.state.session_store = await create_session_store(settings)
    if app.state.http_client is None:
        owned_client = app.state.http_client = httpx.AsyncClient(timeout=settings.REQUEST_TIMEOUT)
        app.state.salesforce = SalesforceClient(
            owned_client, settings.TOOLING_API_VERSION, settings.REQUEST_TIMEOUT,
        )
    log.info("Session store: %s", app.state.session_store.backend)

    try:
        yield
    finally:
        log.info("Shutting down")
        if owned_client is not None:
            await owned_client.aclose()
        if owned_store is not None:
            await owned_store.close()


def create_app(
        settings: Optional[Settings] = None,
        session_store: Optional[SessionStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
) -> FastAPI:
    """Build the application.

    Session store and HTTP client are created by the lifespan unless passed
    in; anything passed in is left open on shutdown for the caller to close.
    """
    settings = settings or config.settings

    app = FastAPI(
        title="Salesforce Validation Bridge",
        description="OAuth (PKCE) bridge for viewing and toggling Salesforce validation rules.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_store = session_store
    app.state.http_client = http_client
    app.state.salesforce = (
        SalesforceClient(http_client, settings.TOOLING_API_VERSION, settings.REQUEST_TIMEOUT)
        if http_client is not None else None
    )
    app.state.sessions = SessionManager(settings)
    app.state.started_at = time.monotonic()

    allowed_origins = list(settings.CORS_ALLOWED_ORIGINS)
    if settings.APP_URL and settings.APP_URL not in allowed_origins:
        allowed_origins.append(settings.APP_URL)

    # Request order: security headers -> CORS -> origin check -> rate limit -> session (added innermost first)
    app.add_middleware(SessionMiddleware, manager=app.state.sessions)
    app.add_middleware(
        RateLimitMiddleware,
        limiter=RateLimiter(settings.RATE_LIMIT_MAX, settings.RATE_LIMIT_WINDOW_SECONDS),
        trust_proxy=settings.TRUST_PROXY,
    )
    app.add_middleware(OriginAllowListMiddleware, allowed_origins=allowed_origins)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    app.add_middleware(SecurityHeadersMiddleware, hsts=settings.IS_PRODUCTION)

    app.include_router(router)
    app.add_exception_handler(BridgeError, bridge_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
    return app


app = create_app()


def main() -> None:
    """Run the bridge with uvicorn.

    For production deployments, use uvicorn directly::

        uvicorn validation_bridge.main:app --host 0.0.0.0 --port 3000
    """
    import uvicorn

    settings = config.settings
    configure_logging(settings.EFFECTIVE_LOG_LEVEL)
    uvicorn.run(
        "validation_bridge.main:app",
        host=settings.HOST,
        port=settings.PORT,
        proxy_headers=settings.TRUST_PROXY,
        log_config=None,
    )


if __name__ == "__main__":
    main()
