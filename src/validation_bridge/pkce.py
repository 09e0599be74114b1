# src/validation_bridge/pkce.py

"""PKCE (RFC 7636) helpers for the Salesforce authorization code flow."""

import base64
import hashlib
import secrets
from typing import NamedTuple

CODE_CHALLENGE_METHOD = "S256"
VERIFIER_BYTES = 32


class PKCEPair(NamedTuple):
    verifier: str  # 43 chars for 32 bytes
    challenge: str  # base64url(sha256(verifier))


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def generate_verifier() -> str:
    """Return a fresh code_verifier: 32 random bytes, base64url without padding."""
    return _b64url(secrets.token_bytes(VERIFIER_BYTES))


def derive_challenge(verifier: str) -> str:
    """Return the S256 code_challenge Salesforce will check the verifier against."""
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def generate_pkce_pair() -> PKCEPair:
    verifier = generate_verifier()
    return PKCEPair(verifier=verifier, challenge=derive_challenge(verifier))


def generate_state() -> str:
    """Opaque value binding a callback to the login attempt that started it."""
    return secrets.token_urlsafe(24)
