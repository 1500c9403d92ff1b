from __future__ import annotations

import logging
import uuid
from typing import Iterable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qbo_sync.core.errors import DuplicateReference
from qbo_sync.db import repo
from qbo_sync.db.models import EntityReference
from qbo_sync.schemas.sync import ExternalEntityType, LocalEntityType


class EntityReferenceLedger:
    """Maps local entities to the QBO entities created for them.

    The unique constraint on (local type, local id) is the concurrency guard:
    a losing insert surfaces as ``DuplicateReference`` rather than overwriting.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        self.logger = logging.getLogger("qbo_sync.services.ledger")

    async def find(self, local_type: LocalEntityType, local_id: str) -> Optional[EntityReference]:
        async with self.session_factory() as session:
            return await repo.get_reference(session, local_type, local_id)

    async def find_by_local_ids(
        self,
        local_type: LocalEntityType,
        local_ids: Iterable[str],
    ) -> dict[str, EntityReference]:
        async with self.session_factory() as session:
            references = await repo.get_references_by_local_ids(session, local_type, set(local_ids))
        return {reference.local_entity_id: reference for reference in references}

    async def store(
        self,
        *,
        account_id: uuid.UUID,
        realm_id: str,
        local_type: LocalEntityType,
        local_id: str,
        external_id: str,
        external_type: ExternalEntityType,
    ) -> EntityReference:
        try:
            async with self.session_factory() as session, session.begin():
                reference = await repo.insert_reference(
                    session,
                    account_id=account_id,
                    realm_id=realm_id,
                    local_type=local_type,
                    local_id=local_id,
                    external_id=external_id,
                    external_type=external_type,
                )
        except IntegrityError:
            existing = await self.find(local_type, local_id)
            if existing is None:
                raise
            if existing.external_entity_id == external_id:
                return existing
            self.logger.warning(
                "entity_reference_conflict",
                extra={
                    "local_type": local_type.value,
                    "local_id": local_id,
                    "existing_external_id": existing.external_entity_id,
                    "attempted_external_id": external_id,
                },
            )
            raise DuplicateReference(
                local_type.value,
                local_id,
                existing.external_entity_id,
                external_id,
            )
        self.logger.info(
            "entity_reference_stored",
            extra={
                "account_id": str(account_id),
                "local_type": local_type.value,
                "local_id": local_id,
                "external_type": external_type.value,
                "external_id": external_id,
            },
        )
        return reference
