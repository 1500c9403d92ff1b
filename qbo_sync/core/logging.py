from __future__ import annotations

import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Optional

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
account_id_ctx: ContextVar[Optional[str]] = ContextVar("account_id", default=None)
realm_id_ctx: ContextVar[Optional[str]] = ContextVar("realm_id", default=None)


class RequestContextFilter(logging.Filter):
    """Injects request scoped context variables into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = request_id_ctx.get()
        record.account_id = account_id_ctx.get()
        record.realm_id = realm_id_ctx.get()
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure JSON structured logging."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_context": {
                    "()": RequestContextFilter,
                }
            },
            "formatters": {
                "json": {
                    "()": jsonlogger.JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "level": level,
                    "formatter": "json",
                    "filters": ["request_context"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": level,
                }
            },
        }
    )


def set_request_context(
    request_id: Optional[str] = None,
    account_id: Optional[str] = None,
    realm_id: Optional[str] = None,
) -> None:
    if request_id is not None:
        request_id_ctx.set(request_id)
    if account_id is not None:
        account_id_ctx.set(account_id)
    if realm_id is not None:
        realm_id_ctx.set(realm_id)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    account_id_ctx.set(None)
    realm_id_ctx.set(None)


def _redact_value(value: Any) -> str:
    if value is None:
        return ""
    return "***redacted***"


def sanitize_payload(payload: Any) -> Any:
    """Remove obvious secrets from a payload while keeping business fields."""

    sensitive_keys = {
        "authorization",
        "access_token",
        "refresh_token",
        "token",
        "secret",
        "password",
    }

    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            sanitized: dict[str, Any] = {}
            for key, val in value.items():
                key_lower = str(key).lower()
                if any(token in key_lower for token in sensitive_keys):
                    sanitized[key] = _redact_value(val)
                else:
                    sanitized[key] = _sanitize(val)
            return sanitized
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    return _sanitize(payload)


def _base_sync_log_extra(
    *,
    event: str,
    account_id: Optional[str],
    realm_id: Optional[str],
    local_type: Optional[str],
    local_id: Optional[str],
    resource: Optional[str],
    request_id: Optional[str],
    payload: Any = None,
) -> dict[str, Any]:
    return {
        "event": event,
        "correlation_id": request_id_ctx.get(),
        "account_id": account_id,
        "realm_id": realm_id,
        "local_type": local_type,
        "local_id": local_id,
        "resource": resource,
        "qbo_request_id": request_id,
        "payload": payload,
    }


def log_sync_started(
    *,
    account_id: Optional[str],
    realm_id: Optional[str],
    local_type: Optional[str],
    local_id: Optional[str],
    resource: Optional[str],
    request_id: Optional[str],
    payload: Any,
) -> None:
    logger = logging.getLogger("qbo_sync.txn")
    logger.info(
        "qbo_sync_attempt_started",
        extra=_base_sync_log_extra(
            event="qbo_sync_attempt_started",
            account_id=account_id,
            realm_id=realm_id,
            local_type=local_type,
            local_id=local_id,
            resource=resource,
            request_id=request_id,
            payload=sanitize_payload(payload),
        ),
    )


def log_sync_finished(
    *,
    account_id: Optional[str],
    realm_id: Optional[str],
    local_type: Optional[str],
    local_id: Optional[str],
    resource: Optional[str],
    request_id: Optional[str],
    result: str,
    external_id: Optional[str] = None,
    qbo_status_code: Optional[int] = None,
    latency_ms: Optional[float] = None,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
) -> None:
    logger = logging.getLogger("qbo_sync.txn")
    logger.info(
        "qbo_sync_attempt_finished",
        extra={
            **_base_sync_log_extra(
                event="qbo_sync_attempt_finished",
                account_id=account_id,
                realm_id=realm_id,
                local_type=local_type,
                local_id=local_id,
                resource=resource,
                request_id=request_id,
            ),
            "external_id": external_id,
            "qbo_status_code": qbo_status_code,
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "result": result,
            "error_code": error_code,
            "error_message": error_message,
        },
    )
