from __future__ import annotations

import logging
import uuid
from typing import Any, Literal, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qbo_sync.core.logging import sanitize_payload
from qbo_sync.db import repo
from qbo_sync.db.models import SyncLogEntry


class SyncLogWriter:
    """Append-only audit trail of sync attempts.

    Writes are best-effort: a failing insert is reported through logging and
    never fails the sync that produced it.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self.logger = logging.getLogger("qbo_sync.services.sync_log")

    async def record(
        self,
        account_id: uuid.UUID,
        *,
        action: str,
        status: Literal["success", "error"],
        local_type: Optional[str] = None,
        local_id: Optional[str] = None,
        payload: Optional[dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> None:
        entry = SyncLogEntry(
            account_id=account_id,
            action=action,
            status=status,
            local_entity_type=local_type,
            local_entity_id=local_id,
            payload=sanitize_payload(payload) if payload is not None else None,
            error_message=error_message,
        )
        try:
            async with self.session_factory() as session, session.begin():
                await repo.add_sync_log(session, entry)
        except SQLAlchemyError:
            self.logger.exception(
                "sync_log_write_failed",
                extra={
                    "account_id": str(account_id),
                    "action": action,
                    "status": status,
                    "local_type": local_type,
                    "local_id": local_id,
                },
            )

    async def recent(self, account_id: uuid.UUID, *, limit: int = 100) -> list[SyncLogEntry]:
        async with self.session_factory() as session:
            return await repo.list_sync_logs(session, account_id, limit=limit)
