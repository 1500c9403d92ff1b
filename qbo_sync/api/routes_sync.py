from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query, status

from qbo_sync.api.deps import get_sync_orchestrator
from qbo_sync.core import logging as logging_utils
from qbo_sync.schemas.sync import BatchSyncRequest, BatchSyncResult, ErrorResponse, SyncResult, SyncStatusRead
from qbo_sync.services.orchestrator import SyncOrchestrator
from qbo_sync.utils.validators import parse_uuid, resolve_local_type


router = APIRouter(
    prefix="/sync",
    tags=["sync"],
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_424_FAILED_DEPENDENCY: {"model": ErrorResponse},
        status.HTTP_502_BAD_GATEWAY: {"model": ErrorResponse},
    },
)
logger = logging.getLogger("qbo_sync.api.sync")


@router.get("/{account_id}/logs")
async def list_sync_logs(
    account_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> list[dict[str, Any]]:
    account_uuid = parse_uuid(account_id, "account_id")
    entries = await orchestrator.sync_log.recent(account_uuid, limit=limit)
    return [
        {
            "action": entry.action,
            "status": entry.status,
            "local_entity_type": entry.local_entity_type,
            "local_entity_id": entry.local_entity_id,
            "payload": entry.payload,
            "error_message": entry.error_message,
            "created_at": entry.created_at,
        }
        for entry in entries
    ]


@router.post("/{account_id}/{local_type}/{local_id}", response_model=SyncResult)
async def sync_entity(
    account_id: str,
    local_type: str,
    local_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncResult:
    account_uuid = parse_uuid(account_id, "account_id")
    entity_type = resolve_local_type(local_type)
    logging_utils.set_request_context(account_id=str(account_uuid))

    result = await orchestrator.sync_entity(account_uuid, entity_type, local_id)
    logger.info(
        "sync_entity_completed",
        extra={
            "local_type": entity_type.value,
            "local_id": local_id,
            "external_id": result.external_entity_id,
        },
    )
    return result


@router.get("/{account_id}/{local_type}/{local_id}", response_model=SyncStatusRead)
async def get_sync_status(
    account_id: str,
    local_type: str,
    local_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> SyncStatusRead:
    account_uuid = parse_uuid(account_id, "account_id")
    entity_type = resolve_local_type(local_type)
    return await orchestrator.get_sync_status(account_uuid, entity_type, local_id)


@router.post("/{account_id}/{local_type}", response_model=BatchSyncResult)
async def sync_batch(
    account_id: str,
    local_type: str,
    payload: BatchSyncRequest,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
) -> BatchSyncResult:
    account_uuid = parse_uuid(account_id, "account_id")
    entity_type = resolve_local_type(local_type)
    logging_utils.set_request_context(account_id=str(account_uuid))

    result = await orchestrator.sync_many(account_uuid, entity_type, payload.ids)
    logger.info(
        "sync_batch_completed",
        extra={
            "local_type": entity_type.value,
            "requested": len(payload.ids),
            "failed": len(result.failed),
        },
    )
    return result
