# src/validation_bridge/guard.py

import logging

from fastapi import Request

from .errors import UnauthenticatedError
from .salesforce import SalesforceClient, SalesforceCredentials
from .session_data import SessionData

log = logging.getLogger(__name__)


# --- Dependency for checking authentication ---
async def require_salesforce_session(request: Request) -> SalesforceCredentials:
    """Gate in front of every Salesforce proxy call.

    Rejects before any upstream request unless the session is authenticated
    and carries both an access token and an instance URL.
    """
    session: SessionData = getattr(request.state, "session", None) or SessionData()
    if not session.is_authenticated:
        log.info("Rejected unauthenticated request to %s", request.url.path)
        raise UnauthenticatedError()
    return SalesforceCredentials(access_token=session.access_token, instance_url=session.instance_url)


def get_salesforce_client(request: Request) -> SalesforceClient:
    return request.app.state.salesforce
