# src/validation_bridge/domains.py

"""Salesforce login domains and their OAuth endpoints.

A login targets production (login.salesforce.com), a sandbox
(test.salesforce.com) or an org's My Domain host. This module is the only
place that turns a domain choice into endpoint URLs.
"""

import enum
import re
from typing import NamedTuple, Optional
from urllib.parse import urlsplit

from .errors import ValidationError

PRODUCTION_LOGIN_HOST = "login.salesforce.com"
SANDBOX_LOGIN_HOST = "test.salesforce.com"

AUTHORIZE_PATH = "/services/oauth2/authorize"
TOKEN_PATH = "/services/oauth2/token"

_LABEL_RE = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


class DomainType(str, enum.Enum):
    PRODUCTION = "production"
    SANDBOX = "sandbox"
    CUSTOM = "custom"


class LoginDomain(NamedTuple):
    type: DomainType
    host: str
    custom_host: Optional[str] = None

    @property
    def authorize_url(self) -> str:
        return f"https://{self.host}{AUTHORIZE_PATH}"

    @property
    def token_url(self) -> str:
        return f"https://{self.host}{TOKEN_PATH}"


def normalize_custom_domain(value: str, suffix: str) -> str:
    """Validate a My Domain entry and return its bare lowercase host.

    Accepts ``acme.my.salesforce.com`` or ``https://acme.my.salesforce.com``
    (an optional trailing slash is fine). Anything with another scheme, a
    port, credentials, a path, a query or a host outside ``suffix`` is
    rejected.
    """
    raw = (value or "").strip()
    if not raw:
        raise ValidationError("Custom domain is required when domain type is 'custom'.")

    candidate = raw if "://" in raw else f"https://{raw}"
    try:
        parts = urlsplit(candidate)
        port = parts.port
    except ValueError:
        raise ValidationError(f"Invalid custom domain: {raw}")

    if parts.scheme.lower() != "https":
        raise ValidationError("Custom domain must use https://")
    if port is not None or parts.username or parts.password:
        raise ValidationError(f"Invalid custom domain: {raw}")
    if parts.path not in ("", "/") or parts.query or parts.fragment:
        raise ValidationError("Custom domain must be a host name without a path.")

    host = (parts.hostname or "").lower()
    labels = host.split(".")
    if len(host) > 253 or not all(_LABEL_RE.match(label) for label in labels):
        raise ValidationError(f"Invalid custom domain: {raw}")

    suffix = suffix.lower()
    if not suffix.startswith("."):
        suffix = "." + suffix
    if not host.endswith(suffix) or len(host) == len(suffix):
        raise ValidationError(f"Custom domain must end with {suffix}")
    return host


def resolve_login_domain(
    domain_type: Optional[str],
    custom_domain: Optional[str],
    suffix: str,
) -> LoginDomain:
    """Map the ``/login`` query parameters to a LoginDomain."""
    if not domain_type:
        domain_type = DomainType.PRODUCTION.value
    try:
        kind = DomainType(domain_type.strip().lower())
    except ValueError:
        raise ValidationError(
            f"Unknown domain type '{domain_type}'. Expected production, sandbox or custom."
        )

    if kind is DomainType.SANDBOX:
        return LoginDomain(kind, SANDBOX_LOGIN_HOST)
    if kind is DomainType.CUSTOM:
        host = normalize_custom_domain(custom_domain or "", suffix)
        return LoginDomain(kind, host, custom_host=host)
    return LoginDomain(kind, PRODUCTION_LOGIN_HOST)
