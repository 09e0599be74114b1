# src/validation_bridge/auth_utils.py

import logging
from typing import Optional
from urllib.parse import urlencode, urlsplit

import httpx
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .config import Settings
from .domains import LoginDomain
from .errors import ProviderError, UpstreamTransientError
from .pkce import CODE_CHALLENGE_METHOD

log = logging.getLogger(__name__)


class TokenResponse(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    access_token: str
    instance_url: str
    identity_url: str = Field(alias="id")
    refresh_token: Optional[str] = None


class UserIdentity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    username: Optional[str] = None
    email: Optional[str] = None
    user_type: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    display_name: Optional[str] = None


# --- OAuth Flow Functions ---

def build_auth_url(settings: Settings, domain: LoginDomain, code_challenge: str, state: str) -> str:
    """
    Builds the Salesforce authorization URL for the chosen login domain.
    The verifier and state are generated and stored in the session by the caller.
    """
    params = {
        "response_type": "code",
        "client_id": settings.CLIENT_ID,
        "redirect_uri": settings.REDIRECT_URI,
        "scope": " ".join(settings.OAUTH_SCOPES),
        "code_challenge": code_challenge,
        "code_challenge_method": CODE_CHALLENGE_METHOD,
        "prompt": "login",
        "state": state,
    }
    return f"{domain.authorize_url}?{urlencode(params)}"


def _require_https(url: str, what: str) -> str:
    parts = urlsplit(url)
    if parts.scheme != "https" or not parts.hostname:
        raise ProviderError(f"Salesforce returned an invalid {what}.")
    return url


def _provider_error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        return body.get("error_description") or body.get("error") or "Authentication failed"
    if isinstance(body, list) and body and isinstance(body[0], dict):
        return body[0].get("message") or "Authentication failed"
    return "Authentication failed"


async def _call_provider(client: httpx.AsyncClient, what: str, method: str, url: str, **kwargs) -> httpx.Response:
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        log.warning("%s timed out: %s", what, e)
        raise UpstreamTransientError(f"{what} timed out. Please try again.") from e
    except httpx.TransportError as e:
        log.warning("%s failed: %s", what, e)
        raise UpstreamTransientError(f"Could not reach Salesforce during {what.lower()}.") from e

    if response.status_code >= 500:
        log.warning("%s failed with HTTP %s", what, response.status_code)
        raise UpstreamTransientError(f"Salesforce is unavailable ({response.status_code}).")
    if response.is_error:
        message = _provider_error_message(response)
        log.warning("%s rejected with HTTP %s: %s", what, response.status_code, message)
        raise ProviderError(message)
    return response


async def exchange_code_for_tokens(
        client: httpx.AsyncClient,
        settings: Settings,
        domain: LoginDomain,
        code: str,
        code_verifier: str,
) -> TokenResponse:
    """
    Redeems the authorization code at the token endpoint of the login domain.
    """
    data = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": settings.CLIENT_ID,
        "client_secret": settings.CLIENT_SECRET,
        "redirect_uri": settings.REDIRECT_URI,
        "code_verifier": code_verifier,
    }
    log.info("Exchanging authorization code at %s", domain.host)
    response = await _call_provider(
        client, "Token exchange", "POST", domain.token_url,
        data=data,
        headers={"Accept": "application/json"},
        timeout=settings.REQUEST_TIMEOUT,
    )
    try:
        tokens = TokenResponse.model_validate(response.json())
    except (ValueError, PydanticValidationError) as e:
        log.error("Token response could not be parsed: %s", e)
        raise ProviderError("Salesforce returned an unexpected token response.") from e

    _require_https(tokens.instance_url, "instance URL")
    _require_https(tokens.identity_url, "identity URL")
    return tokens


async def fetch_user_identity(
        client: httpx.AsyncClient,
        settings: Settings,
        tokens: TokenResponse,
) -> UserIdentity:
    log.info("Fetching user identity")
    response = await _call_provider(
        client, "Identity lookup", "GET", tokens.identity_url,
        headers={"Authorization": f"Bearer {tokens.access_token}", "Accept": "application/json"},
        timeout=settings.REQUEST_TIMEOUT,
    )
    try:
        return UserIdentity.model_validate(response.json())
    except (ValueError, PydanticValidationError) as e:
        log.error("Identity response could not be parsed: %s", e)
        raise ProviderError("Salesforce returned an unexpected identity response.") from e
