from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Iterable, Optional, TypeVar

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from qbo_sync.db.models import (
    Base,
    Connection,
    EntityReference,
    SyncLogEntry,
)
from qbo_sync.schemas.sync import ExternalEntityType, LocalEntityType


ModelT = TypeVar("ModelT", bound=Base)


async def get_connection(session: AsyncSession, account_id: uuid.UUID) -> Optional[Connection]:
    result = await session.execute(
        select(Connection).where(Connection.account_id == account_id)
    )
    return result.scalar_one_or_none()


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise NotImplementedError(f"Upsert is not supported for dialect {dialect}")


async def upsert_connection(
    session: AsyncSession,
    *,
    account_id: uuid.UUID,
    realm_id: str,
    access_token: str,
    refresh_token_enc: str,
    access_expires_at: datetime,
    refresh_expires_at: Optional[datetime],
    scopes: list[str],
    now: datetime,
) -> Connection:
    """Insert or overwrite the single connection row owned by ``account_id``."""
    insert = _insert_for(session)
    values: dict[str, Any] = {
        "realm_id": realm_id,
        "access_token": access_token,
        "refresh_token_enc": refresh_token_enc,
        "access_expires_at": access_expires_at,
        "refresh_expires_at": refresh_expires_at,
        "scopes": scopes,
        "refresh_counter": 0,
        "updated_at": now,
    }
    stmt = insert(Connection).values(
        id=uuid.uuid4(),
        account_id=account_id,
        created_at=now,
        **values,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[Connection.account_id],
        set_=values,
    )
    await session.execute(stmt)
    connection = await get_connection(session, account_id)
    if connection is None:
        raise RuntimeError("Connection upsert did not produce a row")
    await session.refresh(connection)
    return connection


async def update_connection_tokens(
    session: AsyncSession,
    *,
    account_id: uuid.UUID,
    access_token: str,
    access_expires_at: datetime,
    refresh_token_enc: Optional[str],
    refresh_expires_at: Optional[datetime],
    scopes: Optional[list[str]],
    now: datetime,
) -> None:
    values: dict[str, Any] = {
        "access_token": access_token,
        "access_expires_at": access_expires_at,
        "refresh_counter": Connection.refresh_counter + 1,
        "updated_at": now,
    }
    if refresh_token_enc is not None:
        values["refresh_token_enc"] = refresh_token_enc
    if refresh_expires_at is not None:
        values["refresh_expires_at"] = refresh_expires_at
    if scopes:
        values["scopes"] = scopes
    await session.execute(
        update(Connection).where(Connection.account_id == account_id).values(**values)
    )


async def get_reference(
    session: AsyncSession,
    local_type: LocalEntityType,
    local_id: str,
) -> Optional[EntityReference]:
    result = await session.execute(
        select(EntityReference).where(
            EntityReference.local_entity_type == local_type,
            EntityReference.local_entity_id == local_id,
        )
    )
    return result.scalar_one_or_none()


async def get_references_by_local_ids(
    session: AsyncSession,
    local_type: LocalEntityType,
    local_ids: Iterable[str],
) -> list[EntityReference]:
    ids = list(local_ids)
    if not ids:
        return []
    result = await session.execute(
        select(EntityReference).where(
            EntityReference.local_entity_type == local_type,
            EntityReference.local_entity_id.in_(ids),
        )
    )
    return list(result.scalars().all())


async def insert_reference(
    session: AsyncSession,
    *,
    account_id: uuid.UUID,
    realm_id: str,
    local_type: LocalEntityType,
    local_id: str,
    external_id: str,
    external_type: ExternalEntityType,
) -> EntityReference:
    reference = EntityReference(
        account_id=account_id,
        realm_id=realm_id,
        local_entity_type=local_type,
        local_entity_id=local_id,
        external_entity_id=external_id,
        external_entity_type=external_type,
    )
    session.add(reference)
    await session.flush()
    await session.refresh(reference)
    return reference


async def add_sync_log(session: AsyncSession, entry: SyncLogEntry) -> None:
    session.add(entry)
    await session.flush()


async def list_sync_logs(
    session: AsyncSession,
    account_id: uuid.UUID,
    *,
    limit: int = 100,
) -> list[SyncLogEntry]:
    result = await session.execute(
        select(SyncLogEntry)
        .where(SyncLogEntry.account_id == account_id)
        .order_by(SyncLogEntry.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_owned(
    session: AsyncSession,
    model: type[ModelT],
    entity_id: uuid.UUID,
    account_id: uuid.UUID,
) -> Optional[ModelT]:
    result = await session.execute(
        select(model).where(
            model.id == entity_id,
            model.account_id == account_id,
        )
    )
    return result.scalar_one_or_none()
