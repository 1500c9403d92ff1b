from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import RedirectResponse

from qbo_sync.api.deps import get_sync_orchestrator
from qbo_sync.core import logging as logging_utils
from qbo_sync.core.config import Settings, get_settings
from qbo_sync.core.security import decode_oauth_state, encode_oauth_state
from qbo_sync.schemas.sync import ConnectionRead, ConnectionStatus
from qbo_sync.services.orchestrator import SyncOrchestrator
from qbo_sync.utils.validators import parse_uuid


router = APIRouter(prefix="/auth", tags=["auth"])
public_router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("qbo_sync.api.auth")


@router.get("/connect", status_code=status.HTTP_307_TEMPORARY_REDIRECT)
async def connect_oauth(
    account_id: str,
    settings: Settings = Depends(get_settings),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    account_uuid = parse_uuid(account_id, "account_id")
    logging_utils.set_request_context(account_id=str(account_uuid))

    state = encode_oauth_state(settings.fernet_key, str(account_uuid))
    auth_url = orchestrator.token_store.oauth.build_authorization_url(state=state)
    logger.info(
        "oauth_connect_redirect",
        extra={"account_id": str(account_uuid), "environment": settings.environment},
    )
    return RedirectResponse(auth_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/{account_id}/connection", response_model=ConnectionStatus)
async def get_connection_status(
    account_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> ConnectionStatus:
    account_uuid = parse_uuid(account_id, "account_id")
    logging_utils.set_request_context(account_id=str(account_uuid))
    return await orchestrator.connection_status(account_uuid)


@public_router.get("/callback")
async def oauth_callback(
    code: Optional[str] = Query(default=None),
    state: Optional[str] = Query(default=None),
    realmId: Optional[str] = Query(default=None),
    error: Optional[str] = Query(default=None),
    error_description: Optional[str] = Query(default=None),
    settings: Settings = Depends(get_settings),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    if error:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"OAuth error: {error_description or error}",
        )
    if not code or not state or not realmId:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing required OAuth parameters",
        )

    try:
        account_id = decode_oauth_state(settings.fernet_key, state)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc

    account_uuid = parse_uuid(account_id, "account_id")
    connection = await orchestrator.connect(account_uuid, code, realmId)

    logger.info(
        "oauth_callback_completed",
        extra={
            "account_id": str(account_uuid),
            "realm_id": realmId,
            "environment": settings.environment,
        },
    )
    return {
        "message": "OAuth flow completed",
        "environment": settings.environment,
        "connection": ConnectionRead.model_validate(connection).model_dump(mode="json"),
    }
