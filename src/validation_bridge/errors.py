# src/validation_bridge/errors.py

"""Error taxonomy for the validation bridge.

Every failure the bridge reports to a caller is a ``BridgeError``. Browser
facing routes turn it into a redirect carrying ``message``; API routes turn
it into ``{"success": false, "error": message, "code": code}`` with
``status_code``.
"""

from typing import Optional


class BridgeError(Exception):
    """Base class for errors surfaced to the front end."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(BridgeError):
    """Bad caller input, e.g. a custom domain outside the provider suffix."""

    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request."


class ProviderError(BridgeError):
    """The identity provider answered with an OAuth error."""

    code = "PROVIDER_ERROR"
    status_code = 400
    default_message = "Authentication failed."


class MissingCodeError(ProviderError):
    """Callback arrived with neither a code nor an error."""

    code = "NO_CODE"
    default_message = "No authorization code received."


class SessionExpiredError(BridgeError):
    """Callback does not match a pending login attempt in this session."""

    code = "SESSION_EXPIRED"
    status_code = 401
    default_message = "Session expired. Please log in again."


class UnauthenticatedError(BridgeError):
    code = "NOT_AUTHENTICATED"
    status_code = 401
    default_message = "Not authenticated. Please log in."


class UpstreamAuthError(BridgeError):
    """The access token was rejected; the user has to log in again.

    Retrying the same call will not help.
    """

    code = "REAUTH_REQUIRED"
    status_code = 401
    default_message = "Salesforce session is no longer valid. Please log in again."


class RuleNotFoundError(BridgeError):
    code = "RULE_NOT_FOUND"
    status_code = 404
    default_message = "Validation rule not found."


class UpstreamError(BridgeError):
    """Non-retriable failure reported by the upstream API."""

    code = "UPSTREAM_ERROR"
    status_code = 502
    default_message = "Salesforce request failed."


class UpstreamTransientError(BridgeError):
    """Network failure, timeout or 5xx. Safe for the caller to retry."""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503
    default_message = "Salesforce is temporarily unavailable."


class SessionPersistenceError(BridgeError):
    """The session store could not be read or written."""

    code = "SESSION_STORE_UNAVAILABLE"
    status_code = 503
    default_message = "Session storage is unavailable."
