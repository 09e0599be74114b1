"""Pytest fixtures for the validation bridge tests."""
import json
import os
import re
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

# Settings are instantiated at import time; give them a test environment first
os.environ.setdefault("CLIENT_ID", "test-client-id")
os.environ.setdefault("CLIENT_SECRET", "test-client-secret")
os.environ["ENVIRONMENT"] = "development"
os.environ["SESSION_SECRET_KEY"] = "test-session-secret"
os.environ.pop("REDIS_URL", None)

import httpx
import pytest
from httpx import ASGITransport, AsyncClient

from validation_bridge.config import Settings
from validation_bridge.main import create_app
from validation_bridge.pkce import derive_challenge
from validation_bridge.sessions import SESSION_COOKIE_NAME
from validation_bridge.session_store import MemorySessionStore

INSTANCE_URL = "https://acme.my.salesforce.com"
ACCESS_TOKEN = "00Dxx0000001gPL!AQ0AQtest-access-token"
REFRESH_TOKEN = "5Aep861test-refresh-token"
IDENTITY_PATH = "/id/00Dxx0000001gPLEAY/005xx000001Sv6AAAS"
FRONTEND_URL = "http://localhost:5173"

RULE_ACTIVE_ID = "03dxx0000000001AAA"
RULE_INACTIVE_ID = "03dxx0000000002AAA"


def make_settings(**overrides) -> Settings:
    values = dict(
        ENVIRONMENT="development",
        CLIENT_ID="test-client-id",
        CLIENT_SECRET="test-client-secret",
        REDIRECT_URI="http://testserver/oauth/callback",
        FRONTEND_URL=FRONTEND_URL,
        SESSION_SECRET_KEY="test-session-secret",
        SESSION_MAX_AGE=3600,
        RATE_LIMIT_MAX=1000,
        REQUEST_TIMEOUT=5.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


# =============================================================================
# Fake Salesforce (login hosts + instance Tooling API)
# =============================================================================


class FakeSalesforce:
    """httpx.MockTransport handler standing in for every Salesforce host.

    Authorization codes are registered with the challenge they were issued
    for; the token endpoint checks the verifier against it the way the real
    one does.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.codes: Dict[str, str] = {}
        self.token_exception: Optional[Exception] = None
        self.identity_status = 200
        self.api_status: Optional[int] = None
        self.api_exception: Optional[Exception] = None
        self.api_response: Optional[httpx.Response] = None
        self.page_size: Optional[int] = None
        self.patches: List[dict] = []
        self.rules = {
            RULE_ACTIVE_ID: {
                "ValidationName": "Require_Account_Name",
                "EntityDefinition": {"DeveloperName": "Account"},
                "FullName": "Account.Require_Account_Name",
                "Metadata": {
                    "active": True,
                    "description": "Account name is mandatory",
                    "errorConditionFormula": "ISBLANK(Name)",
                    "errorMessage": "Name is required",
                },
            },
            RULE_INACTIVE_ID: {
                "ValidationName": "Close_Date_In_Future",
                "EntityDefinition": {"DeveloperName": "Opportunity"},
                "FullName": "Opportunity.Close_Date_In_Future",
                "Metadata": {
                    "active": False,
                    "errorConditionFormula": "CloseDate < TODAY()",
                    "errorMessage": "Close date must be in the future",
                },
            },
        }

    def requests_to(self, path_fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if path_fragment in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path

        if path == "/services/oauth2/token":
            return self._token(request)
        if path.startswith("/id/"):
            return self._identity(request)
        if "/tooling/" in path:
            return self._tooling(request)
        return httpx.Response(404, json=[{"message": "Not found", "errorCode": "NOT_FOUND"}])

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_exception is not None:
            raise self.token_exception
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        challenge = self.codes.pop(form.get("code"), None)
        if challenge is None or derive_challenge(form.get("code_verifier", "")) != challenge:
            return httpx.Response(400, json={"error": "invalid_grant", "error_description": "authentication failure"})
        return httpx.Response(200, json={
            "access_token": ACCESS_TOKEN,
            "refresh_token": REFRESH_TOKEN,
            "instance_url": INSTANCE_URL,
            "id": f"https://{request.url.host}{IDENTITY_PATH}",
            "token_type": "Bearer",
            "issued_at": "1700000000000",
        })

    def _identity(self, request: httpx.Request) -> httpx.Response:
        if self.identity_status != 200:
            return httpx.Response(self.identity_status, json={"error": "server_error"})
        if request.headers.get("Authorization") != f"Bearer {ACCESS_TOKEN}":
            return httpx.Response(403, json={"error": "Bad_OAuth_Token"})
        return httpx.Response(200, json={
            "username": "admin@acme.example",
            "email": "admin@acme.example",
            "user_type": "STANDARD",
            "user_id": "005xx000001Sv6AAAS",
            "organization_id": "00Dxx0000001gPLEAY",
            "display_name": "Acme Admin",
        })

    def _tooling(self, request: httpx.Request) -> httpx.Response:
        if self.api_exception is not None:
            raise self.api_exception
        if self.api_status is not None:
            return httpx.Response(self.api_status, json=[{"message": "forced", "errorCode": "FORCED"}])
        if self.api_response is not None:
            return self.api_response
        if request.headers.get("Authorization") != f"Bearer {ACCESS_TOKEN}":
            return httpx.Response(401, json=[{"message": "Session expired or invalid", "errorCode": "INVALID_SESSION_ID"}])

        if request.method == "PATCH":
            rule_id = request.url.path.rsplit("/", 1)[-1]
            body = json.loads(request.content)
            self.patches.append(body)
            self.rules[rule_id]["Metadata"] = body["Metadata"]
            return httpx.Response(204)

        if "/query/" in request.url.path and request.url.path.rstrip("/").endswith("/query"):
            soql = request.url.params["q"]
            match = re.search(r"WHERE Id = '(\w+)'", soql)
            if match:
                rule = self.rules.get(match.group(1))
                records = [] if rule is None else [{
                    "Id": match.group(1),
                    "FullName": rule["FullName"],
                    "Metadata": dict(rule["Metadata"]),
                }]
                return httpx.Response(200, json={"size": len(records), "done": True, "records": records})
            return self._list_page(0)

        # nextRecordsUrl: /services/data/vXX.X/tooling/query/01gNEXT-<offset>
        offset = int(request.url.path.rsplit("-", 1)[-1])
        return self._list_page(offset)

    def _list_page(self, offset: int) -> httpx.Response:
        records = [
            {
                "Id": rule_id,
                "ValidationName": rule["ValidationName"],
                "Active": rule["Metadata"]["active"],
                "EntityDefinition": rule["EntityDefinition"],
            }
            for rule_id, rule in self.rules.items()
        ]
        size = self.page_size or len(records)
        page = records[offset:offset + size]
        body = {"size": len(records), "done": offset + size >= len(records), "records": page}
        if not body["done"]:
            body["nextRecordsUrl"] = f"/services/data/v59.0/tooling/query/01gNEXT-{offset + size}"
        return httpx.Response(200, json=body)


# =============================================================================
# App + client fixtures
# =============================================================================


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def fake_sf():
    return FakeSalesforce()


@pytest.fixture
def session_store():
    return MemorySessionStore()


@pytest.fixture
async def http_client(fake_sf):
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_sf.handler)) as client:
        yield client


@pytest.fixture
def app(settings, session_store, http_client):
    return create_app(settings=settings, session_store=session_store, http_client=http_client)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


@pytest.fixture
async def authed_client(client, app, session_store):
    """Client whose cookie points at an authenticated session."""
    await seed_session(client, app, session_store, {
        "domain_type": "production",
        "access_token": ACCESS_TOKEN,
        "refresh_token": REFRESH_TOKEN,
        "instance_url": INSTANCE_URL,
        "username": "admin@acme.example",
        "email": "admin@acme.example",
        "user_type": "STANDARD",
        "organization_id": "00Dxx0000001gPLEAY",
        "authenticated": True,
    })
    return client


# =============================================================================
# Helpers
# =============================================================================


async def seed_session(client: AsyncClient, app, store: MemorySessionStore, data: dict,
                       session_id: str = "seeded-session-id") -> str:
    await store.save(session_id, data, 3600)
    client.cookies.set(SESSION_COOKIE_NAME, app.state.sessions.sign(session_id),
                       domain="testserver.local")
    return session_id


def current_session_id(client: AsyncClient, app) -> Optional[str]:
    token = client.cookies.get(SESSION_COOKIE_NAME)
    return app.state.sessions.unsign(token) if token else None


async def current_session(client: AsyncClient, app, store) -> Optional[dict]:
    session_id = current_session_id(client, app)
    return await store.load(session_id) if session_id else None


def query_of(url: str) -> Dict[str, str]:
    return {k: v[0] for k, v in parse_qs(urlsplit(url).query).items()}


async def start_login(client: AsyncClient, fake_sf: FakeSalesforce, code: str = "abc123",
                      **params) -> Dict[str, str]:
    """Hit /login and register ``code`` at the fake provider for its challenge."""
    response = await client.get("/login", params=params or {"domain": "production"})
    assert response.status_code == 302, response.text
    query = query_of(response.headers["location"])
    fake_sf.codes[code] = query["code_challenge"]
    return query
