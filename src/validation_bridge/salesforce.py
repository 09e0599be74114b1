# src/validation_bridge/salesforce.py

"""Tooling API calls made on behalf of the logged-in user.

Every method takes ``SalesforceCredentials``, which only the session guard
hands out, so nothing reaches Salesforce without an authenticated session.
"""

import logging
import re
from typing import Any, Dict, List, NamedTuple, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from .errors import (
    RuleNotFoundError,
    UpstreamAuthError,
    UpstreamError,
    UpstreamTransientError,
    ValidationError,
)

log = logging.getLogger(__name__)

LIST_RULES_QUERY = (
    "SELECT Id, ValidationName, Active, EntityDefinition.DeveloperName "
    "FROM ValidationRule "
    "ORDER BY EntityDefinition.DeveloperName, ValidationName"
)
# Metadata can only be selected for a single record per query
RULE_METADATA_QUERY = "SELECT Id, FullName, Metadata FROM ValidationRule WHERE Id = '{rule_id}'"

_RULE_ID_RE = re.compile(r"^[a-zA-Z0-9]{15}(?:[a-zA-Z0-9]{3})?$")


class SalesforceCredentials(NamedTuple):
    access_token: str
    instance_url: str


class ValidationRule(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    name: str
    entity_name: Optional[str] = Field(default=None, serialization_alias="entityName")
    active: bool


class ToggleResult(BaseModel):
    id: str
    active: bool


def _upstream_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, list) and body and isinstance(body[0], dict):
        return body[0].get("message") or body[0].get("errorCode") or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return body.get("message") or body.get("error_description") or body.get("error") or f"HTTP {response.status_code}"
    return f"HTTP {response.status_code}"


def _json_body(response: httpx.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError as e:
        log.error("Salesforce returned an unreadable body (HTTP %s)", response.status_code)
        raise UpstreamError("Salesforce returned an unexpected response.") from e
    if not isinstance(body, dict):
        log.error("Salesforce returned an unexpected %s body", type(body).__name__)
        raise UpstreamError("Salesforce returned an unexpected response.")
    return body


def _check_rule_id(rule_id: str) -> str:
    if not isinstance(rule_id, str) or not _RULE_ID_RE.match(rule_id):
        raise ValidationError("Invalid validation rule id.")
    return rule_id


class SalesforceClient:

    def __init__(self, http_client: httpx.AsyncClient, api_version: str = "v59.0", timeout: float = 30.0):
        self.http = http_client
        self.api_version = api_version
        self.timeout = timeout

    def _tooling_url(self, creds: SalesforceCredentials, path: str) -> str:
        return f"{creds.instance_url}/services/data/{self.api_version}/tooling{path}"

    async def _request(self, creds: SalesforceCredentials, method: str, url: str, **kwargs) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {creds.access_token}",
            "Accept": "application/json",
        }
        try:
            response = await self.http.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except httpx.TimeoutException as e:
            log.warning("Salesforce %s %s timed out", method, url)
            raise UpstreamTransientError("Salesforce request timed out. Please try again.") from e
        except httpx.TransportError as e:
            log.warning("Salesforce %s %s failed: %s", method, url, e)
            raise UpstreamTransientError() from e

        if response.status_code == 401:
            log.info("Salesforce rejected the session access token")
            raise UpstreamAuthError()
        if response.status_code >= 500:
            log.warning("Salesforce %s %s returned %s", method, url, response.status_code)
            raise UpstreamTransientError(f"Salesforce is unavailable ({response.status_code}).")
        if response.is_error:
            message = _upstream_message(response)
            log.warning("Salesforce %s %s returned %s: %s", method, url, response.status_code, message)
            if response.status_code == 404:
                raise RuleNotFoundError(message)
            raise UpstreamError(message)
        return response

    async def _query(self, creds: SalesforceCredentials, soql: str) -> List[Dict[str, Any]]:
        response = await self._request(creds, "GET", self._tooling_url(creds, "/query/"), params={"q": soql})
        body = _json_body(response)
        records = list(body.get("records", []))
        while not body.get("done", True) and body.get("nextRecordsUrl"):
            response = await self._request(creds, "GET", f"{creds.instance_url}{body['nextRecordsUrl']}")
            body = _json_body(response)
            records.extend(body.get("records", []))
        return records

    async def list_validation_rules(self, creds: SalesforceCredentials) -> List[ValidationRule]:
        records = await self._query(creds, LIST_RULES_QUERY)
        rules = []
        for record in records:
            entity = record.get("EntityDefinition") or {}
            rules.append(ValidationRule(
                id=record["Id"],
                name=record.get("ValidationName") or "",
                entity_name=entity.get("DeveloperName"),
                active=bool(record.get("Active")),
            ))
        log.debug("Fetched %d validation rules", len(rules))
        return rules

    async def toggle_validation_rule(
            self,
            creds: SalesforceCredentials,
            rule_id: str,
            current_active: Optional[bool] = None,
    ) -> ToggleResult:
        """Set the rule's ``active`` flag to the opposite of its current value.

        ``current_active`` is the value the caller last saw. The target is
        computed from it when given, so replaying a request whose update
        already landed does nothing. The update always carries the full
        Metadata keyed by FullName, as the Tooling API requires.
        """
        _check_rule_id(rule_id)
        records = await self._query(creds, RULE_METADATA_QUERY.format(rule_id=rule_id))
        if not records:
            raise RuleNotFoundError()

        record = records[0]
        metadata = dict(record.get("Metadata") or {})
        full_name = record.get("FullName")
        if not full_name:
            raise UpstreamError("Salesforce did not return the rule's full name.")

        fresh_active = bool(metadata.get("active"))
        seen_active = fresh_active if current_active is None else current_active
        target = not seen_active

        if fresh_active == target:
            log.info("Validation rule %s already has active=%s", rule_id, target)
            return ToggleResult(id=rule_id, active=target)

        metadata["active"] = target
        await self._request(
            creds, "PATCH", self._tooling_url(creds, f"/sobjects/ValidationRule/{rule_id}"),
            json={"Metadata": metadata, "FullName": full_name},
        )
        log.info("Validation rule %s (%s) set to active=%s", rule_id, full_name, target)
        return ToggleResult(id=rule_id, active=target)
