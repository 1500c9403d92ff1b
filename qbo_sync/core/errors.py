"""Tagged failures raised by the sync layer.

Every error carries a stable ``code`` so the API (and the UI behind it) can tell
"reconnect required" apart from "sync the dependency first" and from transient
provider outages.
"""
from __future__ import annotations

from typing import Any, Optional

from fastapi import status


class SyncError(RuntimeError):
    code = "sync_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    @property
    def retriable(self) -> bool:
        return False

    def details(self) -> Optional[dict[str, Any]]:
        return None


class NoConnection(SyncError):
    code = "not_connected"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__("QuickBooks is not connected for this account")


class OAuthExchangeFailed(SyncError):
    code = "oauth_exchange_failed"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class TokenRefreshFailed(SyncError):
    code = "reconnect_required"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, provider_error: str, *, status_code: Optional[int] = None, body: Optional[str] = None):
        self.provider_error = provider_error
        self.status_code = status_code
        self.body = body
        super().__init__(f"QuickBooks rejected the refresh token ({provider_error}); reconnect required")

    def details(self) -> Optional[dict[str, Any]]:
        return {"provider_error": self.provider_error}


class LocalEntityNotFound(SyncError):
    code = "entity_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, local_type: str, local_id: str):
        self.local_type = local_type
        self.local_id = local_id
        super().__init__(f"{local_type} '{local_id}' not found")


class MappingError(SyncError):
    code = "mapping_error"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, message: str, *, field: Optional[str] = None):
        self.field = field
        super().__init__(message)

    def details(self) -> Optional[dict[str, Any]]:
        return {"field": self.field} if self.field else None


class DependencyUnresolved(SyncError):
    code = "dependency_unresolved"
    http_status = status.HTTP_424_FAILED_DEPENDENCY

    def __init__(self, local_type: str, local_id: str, cause: SyncError):
        self.local_type = local_type
        self.local_id = local_id
        self.cause = cause
        super().__init__(f"Sync {local_type} '{local_id}' first: {cause}")

    @property
    def retriable(self) -> bool:
        return self.cause.retriable

    @property
    def root_cause(self) -> SyncError:
        cause = self.cause
        while isinstance(cause, DependencyUnresolved):
            cause = cause.cause
        return cause

    def details(self) -> Optional[dict[str, Any]]:
        root = self.root_cause
        return {
            "dependency_type": self.local_type,
            "dependency_id": self.local_id,
            "cause_code": root.code,
            "cause_message": str(root),
        }


class ExternalApiError(SyncError):
    code = "external_api_error"
    http_status = status.HTTP_502_BAD_GATEWAY

    def __init__(
        self,
        status_code: Optional[int],
        message: str,
        *,
        raw_body: Optional[str] = None,
        error_code: Optional[str] = None,
    ):
        self.status_code = status_code
        self.message = message
        self.raw_body = raw_body
        self.error_code = error_code
        prefix = f"QBO {status_code}" if status_code is not None else "QBO request failed"
        super().__init__(f"{prefix}: {message}")

    @property
    def retriable(self) -> bool:
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500

    @property
    def unauthorized(self) -> bool:
        return self.status_code == 401

    def details(self) -> Optional[dict[str, Any]]:
        return {"status_code": self.status_code, "error_code": self.error_code}


class DuplicateReference(SyncError):
    code = "duplicate_reference"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, local_type: str, local_id: str, existing_external_id: str, attempted_external_id: str):
        self.local_type = local_type
        self.local_id = local_id
        self.existing_external_id = existing_external_id
        self.attempted_external_id = attempted_external_id
        super().__init__(
            f"{local_type} '{local_id}' is already linked to {existing_external_id}, "
            f"refusing to relink to {attempted_external_id}"
        )


class RealmMismatch(SyncError):
    code = "realm_mismatch"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, local_type: str, local_id: str, reference_realm_id: str, connection_realm_id: str):
        self.local_type = local_type
        self.local_id = local_id
        self.reference_realm_id = reference_realm_id
        self.connection_realm_id = connection_realm_id
        super().__init__(
            f"{local_type} '{local_id}' was synced to QBO company {reference_realm_id}, "
            f"but the account is now connected to {connection_realm_id}"
        )

    def details(self) -> Optional[dict[str, Any]]:
        return {
            "reference_realm_id": self.reference_realm_id,
            "connection_realm_id": self.connection_realm_id,
        }


class InternalSyncError(SyncError):
    code = "internal_error"

    def __init__(self, local_type: str, local_id: str, cause: Exception):
        self.local_type = local_type
        self.local_id = local_id
        self.cause = cause
        super().__init__(f"Sync of {local_type} '{local_id}' failed unexpectedly ({type(cause).__name__})")

    def details(self) -> Optional[dict[str, Any]]:
        return {"exception": type(self.cause).__name__}
