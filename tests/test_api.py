import httpx
import pytest

from conftest import (
    ACCESS_TOKEN,
    INSTANCE_URL,
    RULE_ACTIVE_ID,
    RULE_INACTIVE_ID,
    seed_session,
    start_login,
)


# --- Session guard ---

@pytest.mark.parametrize("method, path", [
    ("GET", "/api/validation-rules"),
    ("POST", "/api/validation-toggle"),
    ("GET", "/api/user"),
])
async def test_unauthenticated_requests_never_reach_salesforce(client, fake_sf, method, path):
    response = await client.request(method, path, json={"id": RULE_ACTIVE_ID})

    assert response.status_code == 401
    assert response.json() == {
        "success": False,
        "error": "Not authenticated. Please log in.",
        "code": "NOT_AUTHENTICATED",
    }
    assert fake_sf.requests == []


async def test_pending_login_is_not_authenticated(client, app, session_store, fake_sf):
    await seed_session(client, app, session_store, {"code_verifier": "v", "oauth_state": "s"})
    response = await client.get("/api/validation-rules")
    assert response.status_code == 401
    assert fake_sf.requests == []


async def test_authenticated_flag_without_token_is_rejected(client, app, session_store, fake_sf):
    await seed_session(client, app, session_store, {"authenticated": True, "instance_url": INSTANCE_URL})
    response = await client.get("/api/validation-rules")
    assert response.status_code == 401
    assert fake_sf.requests == []


# --- Listing ---

async def test_list_validation_rules(authed_client, fake_sf):
    response = await authed_client.get("/api/validation-rules")

    assert response.status_code == 200
    assert response.json() == [
        {"id": RULE_ACTIVE_ID, "name": "Require_Account_Name", "entityName": "Account", "active": True},
        {"id": RULE_INACTIVE_ID, "name": "Close_Date_In_Future", "entityName": "Opportunity", "active": False},
    ]
    [request] = fake_sf.requests
    assert request.url.host == "acme.my.salesforce.com"
    assert request.url.path == "/services/data/v59.0/tooling/query/"
    assert "FROM ValidationRule" in request.url.params["q"]
    assert request.headers["Authorization"] == f"Bearer {ACCESS_TOKEN}"


async def test_list_follows_pagination(authed_client, fake_sf):
    fake_sf.page_size = 1
    response = await authed_client.get("/api/validation-rules")

    assert [rule["id"] for rule in response.json()] == [RULE_ACTIVE_ID, RULE_INACTIVE_ID]
    assert len(fake_sf.requests) == 2
    assert fake_sf.requests[1].url.path == "/services/data/v59.0/tooling/query/01gNEXT-1"


async def test_list_with_rejected_token_requires_reauth(authed_client, fake_sf):
    fake_sf.api_status = 401
    response = await authed_client.get("/api/validation-rules")

    assert response.status_code == 401
    assert response.json()["code"] == "REAUTH_REQUIRED"


@pytest.mark.parametrize("status_code", [500, 503])
async def test_list_with_upstream_outage(authed_client, fake_sf, status_code):
    fake_sf.api_status = status_code
    response = await authed_client.get("/api/validation-rules")

    assert response.status_code == 503
    assert response.json()["code"] == "UPSTREAM_UNAVAILABLE"


async def test_list_with_upstream_timeout(authed_client, fake_sf):
    fake_sf.api_exception = httpx.ReadTimeout("timed out")
    response = await authed_client.get("/api/validation-rules")

    assert response.status_code == 503
    assert response.json()["error"] == "Salesforce request timed out. Please try again."


async def test_list_with_upstream_client_error(authed_client, fake_sf):
    fake_sf.api_status = 400
    response = await authed_client.get("/api/validation-rules")

    assert response.status_code == 502
    assert response.json() == {"success": False, "error": "forced", "code": "UPSTREAM_ERROR"}


# --- Toggling ---

async def test_toggle_deactivates_active_rule(authed_client, fake_sf):
    response = await authed_client.post("/api/validation-toggle", json={"id": RULE_ACTIVE_ID})

    assert response.status_code == 200
    assert response.json() == {"id": RULE_ACTIVE_ID, "active": False}

    [patch] = fake_sf.requests_to(f"/tooling/sobjects/ValidationRule/{RULE_ACTIVE_ID}")
    assert patch.method == "PATCH"
    [body] = fake_sf.patches
    assert body["FullName"] == "Account.Require_Account_Name"
    assert body["Metadata"] == {
        "active": False,
        "description": "Account name is mandatory",
        "errorConditionFormula": "ISBLANK(Name)",
        "errorMessage": "Name is required",
    }


async def test_toggle_activates_inactive_rule(authed_client, fake_sf):
    response = await authed_client.post("/api/validation-toggle", json={"id": RULE_INACTIVE_ID})

    assert response.json() == {"id": RULE_INACTIVE_ID, "active": True}
    assert fake_sf.rules[RULE_INACTIVE_ID]["Metadata"]["active"] is True


async def test_toggle_twice_restores_state(authed_client, fake_sf):
    await authed_client.post("/api/validation-toggle", json={"id": RULE_ACTIVE_ID})
    response = await authed_client.post("/api/validation-toggle", json={"id": RULE_ACTIVE_ID})

    assert response.json() == {"id": RULE_ACTIVE_ID, "active": True}
    assert len(fake_sf.patches) == 2


async def test_replayed_toggle_is_a_no_op(authed_client, fake_sf):
    body = {"id": RULE_ACTIVE_ID, "active": True}
    first = await authed_client.post("/api/validation-toggle", json=body)
    replay = await authed_client.post("/api/validation-toggle", json=body)

    assert first.json() == replay.json() == {"id": RULE_ACTIVE_ID, "active": False}
    assert len(fake_sf.patches) == 1
    assert fake_sf.rules[RULE_ACTIVE_ID]["Metadata"]["active"] is False


async def test_toggle_accepts_salesforce_style_keys(authed_client, fake_sf):
    response = await authed_client.post("/api/validation-toggle", json={"Id": RULE_INACTIVE_ID, "Active": False})
    assert response.json() == {"id": RULE_INACTIVE_ID, "active": True}


async def test_toggle_unknown_rule(authed_client, fake_sf):
    response = await authed_client.post("/api/validation-toggle", json={"id": "03dxx0000000099AAA"})

    assert response.status_code == 404
    assert response.json()["code"] == "RULE_NOT_FOUND"
    assert fake_sf.patches == []


@pytest.mark.parametrize("body", [
    {},
    {"id": ""},
    {"id": "03d' OR Id != '"},
    {"id": "short"},
])
async def test_toggle_rejects_bad_ids(authed_client, fake_sf, body):
    response = await authed_client.post("/api/validation-toggle", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert fake_sf.requests == []


async def test_toggle_with_rejected_token_requires_reauth(authed_client, fake_sf):
    fake_sf.api_status = 401
    response = await authed_client.post("/api/validation-toggle", json={"id": RULE_ACTIVE_ID})

    assert response.status_code == 401
    assert response.json()["code"] == "REAUTH_REQUIRED"
    # The session survives; the front end decides when to send the user to /login
    assert (await authed_client.get("/api/auth/status")).json()["authenticated"] is True


# --- Session info ---

async def test_user_info(authed_client, fake_sf):
    response = await authed_client.get("/api/user")

    assert response.status_code == 200
    assert response.json() == {
        "username": "admin@acme.example",
        "email": "admin@acme.example",
        "userType": "STANDARD",
        "instanceUrl": INSTANCE_URL,
        "domainType": "production",
        "organizationId": "00Dxx0000001gPLEAY",
        "userId": None,
        "displayName": None,
        "authenticatedAt": None,
    }
    assert fake_sf.requests == []


async def test_auth_status_anonymous(client):
    response = await client.get("/api/auth/status")
    assert response.json() == {"authenticated": False, "username": None, "instanceUrl": None}


async def test_list_with_non_json_body_is_an_upstream_error(authed_client, fake_sf):
    fake_sf.api_response = httpx.Response(
        200, text="<html>Down for maintenance</html>", headers={"Content-Type": "text/html"},
    )
    response = await authed_client.get("/api/validation-rules")

    assert response.status_code == 502
    assert response.json() == {
        "success": False,
        "error": "Salesforce returned an unexpected response.",
        "code": "UPSTREAM_ERROR",
    }


async def test_toggle_with_unexpected_body_shape_is_an_upstream_error(authed_client, fake_sf):
    fake_sf.api_response = httpx.Response(200, json=["not", "a", "query", "result"])
    response = await authed_client.post("/api/validation-toggle", json={"id": RULE_ACTIVE_ID})

    assert response.status_code == 502
    assert response.json()["code"] == "UPSTREAM_ERROR"
    assert fake_sf.patches == []


async def test_user_info_after_login(client, fake_sf):
    query = await start_login(client, fake_sf)
    await client.get("/oauth/callback", params={"code": "abc123", "state": query["state"]})

    body = (await client.get("/api/user")).json()
    assert body["displayName"] == "Acme Admin"
    assert body["userId"] == "005xx000001Sv6AAAS"
    assert body["authenticatedAt"] > 0
