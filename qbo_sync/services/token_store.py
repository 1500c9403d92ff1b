from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qbo_sync.core.config import Settings
from qbo_sync.core.errors import ExternalApiError, NoConnection, OAuthExchangeFailed, TokenRefreshFailed
from qbo_sync.core.security import decrypt_refresh_token, encrypt_refresh_token
from qbo_sync.db import repo
from qbo_sync.db.models import Connection
from qbo_sync.services.qbo_oauth import OAuthGrantError, QuickBooksOAuthClient
from qbo_sync.services.sync_log import SyncLogWriter


Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TokenStore:
    """Produces valid QBO access tokens for an account, refreshing them on demand.

    Refreshes are single-flight per account: callers arriving while a refresh is
    running await the same task instead of spending the refresh token twice.
    """

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        oauth: QuickBooksOAuthClient,
        sync_log: SyncLogWriter,
        *,
        clock: Clock = _utcnow,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.oauth = oauth
        self.sync_log = sync_log
        self.clock = clock
        self.refresh_margin = timedelta(seconds=settings.token_refresh_margin_seconds)
        self.logger = logging.getLogger("qbo_sync.services.tokens")
        self._inflight: dict[uuid.UUID, asyncio.Task[Connection]] = {}

    async def get_connection(self, account_id: uuid.UUID) -> Optional[Connection]:
        async with self.session_factory() as session:
            return await repo.get_connection(session, account_id)

    async def get_valid_access_token(self, account_id: uuid.UUID) -> str:
        connection = await self.get_connection(account_id)
        if connection is None:
            raise NoConnection(str(account_id))
        if not self._needs_refresh(connection):
            return connection.access_token
        refreshed = await self._single_flight(account_id, stale_token=None)
        return refreshed.access_token

    async def force_refresh(self, account_id: uuid.UUID, stale_token: str) -> str:
        """Replace an access token QBO rejected with 401.

        When another caller already swapped ``stale_token`` out, the stored token
        is returned without a second refresh grant.
        """
        refreshed = await self._single_flight(account_id, stale_token=stale_token)
        return refreshed.access_token

    async def exchange_authorization_code(
        self,
        account_id: uuid.UUID,
        code: str,
        realm_id: str,
        redirect_uri: Optional[str] = None,
    ) -> Connection:
        try:
            bundle = await self.oauth.exchange_authorization_code(code=code, redirect_uri=redirect_uri)
        except OAuthGrantError as exc:
            await self.sync_log.record(
                account_id,
                action="oauth:exchange",
                status="error",
                payload={"realm_id": realm_id},
                error_message=str(exc),
            )
            raise OAuthExchangeFailed(
                f"Authorization code exchange failed: {exc.provider_error}",
                status_code=exc.status_code,
                body=exc.body,
            ) from exc

        now = self.clock()
        async with self.session_factory() as session, session.begin():
            connection = await repo.upsert_connection(
                session,
                account_id=account_id,
                realm_id=realm_id,
                access_token=bundle.access_token,
                refresh_token_enc=encrypt_refresh_token(self.settings.fernet_key, bundle.refresh_token or ""),
                access_expires_at=bundle.access_expires_at,
                refresh_expires_at=bundle.refresh_expires_at,
                scopes=bundle.scopes,
                now=now,
            )
        self.logger.info(
            "connection_upserted",
            extra={"account_id": str(account_id), "realm_id": realm_id},
        )
        await self.sync_log.record(
            account_id,
            action="oauth:exchange",
            status="success",
            payload={"realm_id": realm_id},
        )
        return connection

    def is_refresh_token_expired(self, connection: Connection) -> bool:
        if connection.refresh_expires_at is None:
            return False
        return self.clock() >= as_aware(connection.refresh_expires_at)

    def _needs_refresh(self, connection: Connection) -> bool:
        return self.clock() >= as_aware(connection.access_expires_at) - self.refresh_margin

    async def _single_flight(self, account_id: uuid.UUID, *, stale_token: Optional[str]) -> Connection:
        task = self._inflight.get(account_id)
        if task is None:
            task = asyncio.create_task(self._refresh(account_id, stale_token=stale_token))
            self._inflight[account_id] = task
            task.add_done_callback(lambda _: self._inflight.pop(account_id, None))
        return await asyncio.shield(task)

    async def _refresh(self, account_id: uuid.UUID, *, stale_token: Optional[str]) -> Connection:
        connection = await self.get_connection(account_id)
        if connection is None:
            raise NoConnection(str(account_id))

        # A refresh that finished between our read and this task makes a second grant unnecessary.
        if stale_token is None and not self._needs_refresh(connection):
            return connection
        if stale_token is not None and connection.access_token != stale_token:
            return connection

        refresh_token = decrypt_refresh_token(self.settings.fernet_key, connection.refresh_token_enc)
        try:
            bundle = await self.oauth.refresh_tokens(refresh_token=refresh_token)
        except OAuthGrantError as exc:
            await self.sync_log.record(
                account_id,
                action="token:refresh",
                status="error",
                payload={"realm_id": connection.realm_id, "status": exc.status_code},
                error_message=str(exc),
            )
            if exc.status_code is None or exc.status_code >= 500:
                raise ExternalApiError(exc.status_code, str(exc), raw_body=exc.body) from exc
            raise TokenRefreshFailed(
                exc.provider_error,
                status_code=exc.status_code,
                body=exc.body,
            ) from exc

        rotated = bundle.refresh_token is not None and bundle.refresh_token != refresh_token
        now = self.clock()
        async with self.session_factory() as session, session.begin():
            await repo.update_connection_tokens(
                session,
                account_id=account_id,
                access_token=bundle.access_token,
                access_expires_at=bundle.access_expires_at,
                refresh_token_enc=(
                    encrypt_refresh_token(self.settings.fernet_key, bundle.refresh_token)
                    if rotated and bundle.refresh_token
                    else None
                ),
                refresh_expires_at=bundle.refresh_expires_at,
                scopes=bundle.scopes,
                now=now,
            )
        self.logger.info(
            "credential_refreshed",
            extra={
                "account_id": str(account_id),
                "realm_id": connection.realm_id,
                "refresh_token_rotated": rotated,
                "force": stale_token is not None,
            },
        )
        await self.sync_log.record(
            account_id,
            action="token:refresh",
            status="success",
            payload={"realm_id": connection.realm_id, "refresh_token_rotated": rotated},
        )
        refreshed = await self.get_connection(account_id)
        if refreshed is None:
            raise NoConnection(str(account_id))
        return refreshed
