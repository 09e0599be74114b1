# src/validation_bridge/session_data.py

from typing import Optional

from pydantic import BaseModel

from .domains import DomainType


class SessionData(BaseModel):
    """
    Represents the data stored server-side for a user session.
    Only a signed session ID is stored in the browser cookie.
    """
    # Pending login attempt (AwaitingCallback)
    code_verifier: Optional[str] = None
    oauth_state: Optional[str] = None
    domain_type: Optional[DomainType] = None
    custom_domain_host: Optional[str] = None

    # Authenticated
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    instance_url: Optional[str] = None
    username: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    user_type: Optional[str] = None
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    authenticated: bool = False
    authenticated_at: Optional[int] = None  # epoch seconds

    # Written under the pre-login id; moved to a fresh id by the next response that can set a cookie
    id_rotation_pending: bool = False

    @property
    def is_awaiting_callback(self) -> bool:
        return bool(self.code_verifier and self.oauth_state)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.authenticated and self.access_token and self.instance_url)

    def to_store(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)
