# src/validation_bridge/oauth_flow.py

"""Login state machine over a single session.

    Anonymous --begin_login--> AwaitingCallback --complete_login--> Authenticated
        ^                            |                                   |
        +------ callback failure ----+------------- logout --------------+

``begin_login`` and ``complete_login`` only compute the next SessionData;
persisting it (and resetting to Anonymous on failure) is up to the route,
which has to save before it redirects.
"""

import logging
import secrets
import time
from typing import Optional, Tuple

import httpx

from . import auth_utils
from .config import Settings
from .domains import LoginDomain, resolve_login_domain
from .errors import MissingCodeError, ProviderError, SessionExpiredError
from .pkce import generate_pkce_pair, generate_state
from .session_data import SessionData

log = logging.getLogger(__name__)


def begin_login(settings: Settings, domain: LoginDomain) -> Tuple[SessionData, str]:
    """Start a login attempt: returns the pending session and the authorization URL.

    The pending session replaces whatever the browser had before, so only the
    most recent attempt's verifier can be redeemed.
    """
    pkce = generate_pkce_pair()
    state = generate_state()
    pending = SessionData(
        code_verifier=pkce.verifier,
        oauth_state=state,
        domain_type=domain.type,
        custom_domain_host=domain.custom_host,
    )
    return pending, auth_utils.build_auth_url(settings, domain, pkce.challenge, state)


def check_callback_params(code: Optional[str], error: Optional[str], error_description: Optional[str]) -> str:
    if error:
        raise ProviderError(error_description or error)
    if not code:
        raise MissingCodeError()
    return code


def _pending_domain(settings: Settings, session: SessionData, state: Optional[str]) -> LoginDomain:
    if not session.is_awaiting_callback:
        raise SessionExpiredError()
    if not state or not secrets.compare_digest(state.encode(), session.oauth_state.encode()):
        # Callback for an older (overwritten) login attempt or another browser
        raise SessionExpiredError()
    domain_type = session.domain_type.value if session.domain_type else None
    return resolve_login_domain(domain_type, session.custom_domain_host, settings.CUSTOM_DOMAIN_SUFFIX)


async def complete_login(
        client: httpx.AsyncClient,
        settings: Settings,
        session: SessionData,
        code: str,
        state: Optional[str],
) -> SessionData:
    """Redeem ``code`` for the pending attempt in ``session``.

    Returns a new authenticated SessionData; ``session`` itself is never
    modified, so a failure part way through leaves nothing half populated.
    """
    domain = _pending_domain(settings, session, state)

    tokens = await auth_utils.exchange_code_for_tokens(client, settings, domain, code, session.code_verifier)
    identity = await auth_utils.fetch_user_identity(client, settings, tokens)

    log.info("User authenticated: %s (%s)", identity.username, domain.type.value)
    return SessionData(
        domain_type=domain.type,
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        instance_url=tokens.instance_url.rstrip("/"),
        display_name=identity.display_name,
        username=identity.username or "User",
        email=identity.email or "",
        user_type=identity.user_type or "Standard",
        user_id=identity.user_id,
        organization_id=identity.organization_id,
        authenticated=True,
        authenticated_at=int(time.time()),
    )
