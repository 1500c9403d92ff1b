from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Optional

import httpx

from qbo_sync.core.config import Settings
from qbo_sync.core.errors import ExternalApiError
from qbo_sync.core.http import get_async_client, request_with_retry_and_backoff
from qbo_sync.schemas.sync import QBOResource


def _fault_detail(response: httpx.Response) -> tuple[str, Optional[str]]:
    """Pull the first ``Fault.Error`` entry out of a QBO error body."""
    try:
        body = response.json()
    except ValueError:
        return (response.text or response.reason_phrase or "Unknown error"), None

    if isinstance(body, dict):
        fault = body.get("Fault") or body.get("fault") or {}
        errors = fault.get("Error") or fault.get("error") or []
        if errors and isinstance(errors, list) and isinstance(errors[0], dict):
            error = errors[0]
            message = error.get("Detail") or error.get("Message") or "Unknown error"
            code = error.get("code")
            return str(message), (str(code) if code is not None else None)
        if body.get("message"):
            return str(body["message"]), None
    return response.text or "Unknown error", None


class QuickBooksClient:
    """Thin transport for the QBO accounting API.

    Takes an access token per call and never refreshes it: a 401 surfaces as
    ``ExternalApiError`` so the caller can refresh and retry once.
    """

    SANDBOX_API_BASE = "https://sandbox-quickbooks.api.intuit.com"
    PROD_API_BASE = "https://quickbooks.api.intuit.com"

    def __init__(self, settings: Settings, *, transport: httpx.AsyncBaseTransport | None = None):
        self.settings = settings
        self.transport = transport
        self.logger = logging.getLogger("qbo_sync.services.qbo")

    @property
    def api_base(self) -> str:
        return self.SANDBOX_API_BASE if self.settings.environment == "sandbox" else self.PROD_API_BASE

    def build_url(self, realm_id: str, endpoint: str) -> str:
        return f"{self.api_base}/v3/company/{realm_id}/{endpoint.lstrip('/')}"

    async def request(
        self,
        method: str,
        endpoint: str,
        access_token: str,
        realm_id: str,
        *,
        body: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> tuple[dict[str, Any], float]:
        url = self.build_url(realm_id, endpoint)
        headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }
        if body is not None:
            headers["Content-Type"] = "application/json"
        query = {"minorversion": self.settings.qbo_minor_version, **(params or {})}

        start = perf_counter()
        try:
            async with get_async_client(self.settings, self.transport) as client:
                response = await request_with_retry_and_backoff(
                    client,
                    method,
                    url,
                    json=body,
                    params=query,
                    headers=headers,
                    settings=self.settings,
                )
        except httpx.TimeoutException as exc:
            self.logger.error(
                "qbo_request_timeout",
                extra={"method": method, "endpoint": endpoint, "realm_id": realm_id},
            )
            raise ExternalApiError(None, f"Request to {endpoint} timed out") from exc
        except httpx.HTTPError as exc:
            self.logger.error(
                "qbo_request_transport_error",
                extra={"method": method, "endpoint": endpoint, "realm_id": realm_id, "error": str(exc)},
            )
            raise ExternalApiError(None, f"Request to {endpoint} failed: {exc}") from exc
        latency_ms = (perf_counter() - start) * 1000

        if response.status_code >= 400:
            message, error_code = _fault_detail(response)
            log = self.logger.warning if response.status_code == 401 else self.logger.error
            log(
                "qbo_request_failed",
                extra={
                    "method": method,
                    "endpoint": endpoint,
                    "realm_id": realm_id,
                    "status": response.status_code,
                    "error_code": error_code,
                    "body": response.text,
                },
            )
            raise ExternalApiError(
                response.status_code,
                message,
                raw_body=response.text,
                error_code=error_code,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalApiError(response.status_code, "QBO returned a non-JSON body", raw_body=response.text) from exc
        return payload, latency_ms

    async def create(
        self,
        resource: QBOResource,
        access_token: str,
        realm_id: str,
        payload: dict[str, Any],
        *,
        request_id: Optional[str] = None,
    ) -> tuple[dict[str, Any], float]:
        params = {"requestid": request_id} if request_id else None
        response, latency_ms = await self.request(
            "POST",
            resource.path,
            access_token,
            realm_id,
            body=payload,
            params=params,
        )
        entity = response.get(resource.entity)
        if not isinstance(entity, dict) or not entity.get("Id"):
            raise ExternalApiError(
                None,
                f"QBO {resource.entity} response did not include an Id",
                raw_body=str(response),
            )
        return entity, latency_ms

    async def query(self, access_token: str, realm_id: str, statement: str) -> dict[str, Any]:
        response, _ = await self.request(
            "GET",
            "query",
            access_token,
            realm_id,
            params={"query": statement.strip()},
        )
        return response.get("QueryResponse") or {}

    async def find_by_display_name(
        self,
        resource: QBOResource,
        access_token: str,
        realm_id: str,
        display_name: str,
    ) -> Optional[dict[str, Any]]:
        statement = (
            f"select * from {resource.entity} "
            f"where DisplayName = '{self._escape(display_name)}' MAXRESULTS 1"
        )
        result = await self.query(access_token, realm_id, statement)
        matches = result.get(resource.entity) or []
        return matches[0] if matches else None

    def _escape(self, value: str) -> str:
        return value.replace("\\", "\\\\").replace("'", "\\'")
