from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

import httpx
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from qbo_sync.core.config import Settings
from qbo_sync.core.errors import (
    DependencyUnresolved,
    DuplicateReference,
    ExternalApiError,
    InternalSyncError,
    LocalEntityNotFound,
    NoConnection,
    RealmMismatch,
    SyncError,
    TokenRefreshFailed,
)
from qbo_sync.core.logging import log_sync_finished, log_sync_started, set_request_context
from qbo_sync.db import repo
from qbo_sync.db.models import (
    Base,
    Client,
    Connection,
    EntityReference,
    Expense,
    ExpensePayment,
    Invoice,
    InvoicePayment,
)
from qbo_sync.schemas.sync import (
    BatchSyncItem,
    BatchSyncResult,
    ConnectionStatus,
    LocalEntityType,
    QBOResource,
    SyncResult,
    SyncStatusRead,
)
from qbo_sync.services import mapper
from qbo_sync.services.ledger import EntityReferenceLedger
from qbo_sync.services.qbo_client import QuickBooksClient
from qbo_sync.services.qbo_oauth import QuickBooksOAuthClient
from qbo_sync.services.sync_log import SyncLogWriter
from qbo_sync.services.token_store import TokenStore
from qbo_sync.utils.idempotency import build_request_id, vendor_key


ModelT = TypeVar("ModelT", bound=Base)
T = TypeVar("T")

# QBO "Duplicate Name Exists" validation fault.
DUPLICATE_NAME_ERROR = "6240"

RESOURCES: dict[LocalEntityType, QBOResource] = {
    LocalEntityType.CLIENT: QBOResource.CUSTOMER,
    LocalEntityType.VENDOR: QBOResource.VENDOR,
    LocalEntityType.EXPENSE: QBOResource.BILL,
    LocalEntityType.EXPENSE_PAYMENT: QBOResource.BILL_PAYMENT,
    LocalEntityType.INVOICE: QBOResource.INVOICE,
    LocalEntityType.INVOICE_PAYMENT: QBOResource.PAYMENT,
}

# Local tables backing each type; vendors are derived from expense payees.
MODELS: dict[LocalEntityType, type[Base]] = {
    LocalEntityType.CLIENT: Client,
    LocalEntityType.EXPENSE: Expense,
    LocalEntityType.EXPENSE_PAYMENT: ExpensePayment,
    LocalEntityType.INVOICE: Invoice,
    LocalEntityType.INVOICE_PAYMENT: InvoicePayment,
}

Handler = Callable[[Connection, str, str], Awaitable[str]]


class SyncOrchestrator:
    """Drives a local entity (and its prerequisites) into QBO exactly once.

    An entity is unsynced until the ledger holds its reference and synced
    afterwards. Failed attempts leave no reference behind, so a retry starts
    from scratch; the QBO ``requestid`` makes a replayed create return the
    entity created by the lost attempt.
    """

    def __init__(
        self,
        settings: Settings,
        token_store: TokenStore,
        ledger: EntityReferenceLedger,
        qbo_client: QuickBooksClient,
        sync_log: SyncLogWriter,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        self.settings = settings
        self.token_store = token_store
        self.ledger = ledger
        self.qbo_client = qbo_client
        self.sync_log = sync_log
        self.session_factory = session_factory
        self.logger = logging.getLogger("qbo_sync.services.orchestrator")
        self._locks: weakref.WeakValueDictionary[tuple[LocalEntityType, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )
        self._handlers: dict[LocalEntityType, Handler] = {
            LocalEntityType.CLIENT: self._sync_client,
            LocalEntityType.VENDOR: self._sync_vendor,
            LocalEntityType.EXPENSE: self._sync_expense,
            LocalEntityType.EXPENSE_PAYMENT: self._sync_expense_payment,
            LocalEntityType.INVOICE: self._sync_invoice,
            LocalEntityType.INVOICE_PAYMENT: self._sync_invoice_payment,
        }

    async def connect(
        self,
        account_id: uuid.UUID,
        code: str,
        realm_id: str,
        redirect_uri: Optional[str] = None,
    ) -> Connection:
        set_request_context(account_id=str(account_id), realm_id=realm_id)
        return await self.token_store.exchange_authorization_code(account_id, code, realm_id, redirect_uri)

    async def connection_status(self, account_id: uuid.UUID) -> ConnectionStatus:
        connection = await self.token_store.get_connection(account_id)
        if connection is None:
            return ConnectionStatus(
                account_id=account_id,
                connected=False,
                environment=self.settings.environment,
            )
        return ConnectionStatus(
            account_id=account_id,
            connected=True,
            environment=self.settings.environment,
            realm_id=connection.realm_id,
            access_expires_at=connection.access_expires_at,
            refresh_expires_at=connection.refresh_expires_at,
            reconnect_required=self.token_store.is_refresh_token_expired(connection),
        )

    async def sync_entity(
        self,
        account_id: uuid.UUID,
        local_type: LocalEntityType,
        local_id: str,
    ) -> SyncResult:
        connection = await self._require_connection(account_id, local_type, local_id)
        external_id = await self._sync(connection, local_type, local_id)
        return SyncResult(
            local_entity_type=local_type,
            local_entity_id=local_id,
            external_entity_id=external_id,
            external_entity_type=RESOURCES[local_type].external_type,
        )

    async def sync_client(self, account_id: uuid.UUID, client_id: str) -> str:
        result = await self.sync_entity(account_id, LocalEntityType.CLIENT, client_id)
        return result.external_entity_id

    async def sync_vendor(self, account_id: uuid.UUID, payee: str) -> str:
        result = await self.sync_entity(account_id, LocalEntityType.VENDOR, payee)
        return result.external_entity_id

    async def sync_expense(self, account_id: uuid.UUID, expense_id: str) -> str:
        result = await self.sync_entity(account_id, LocalEntityType.EXPENSE, expense_id)
        return result.external_entity_id

    async def sync_expense_payment(self, account_id: uuid.UUID, payment_id: str) -> str:
        result = await self.sync_entity(account_id, LocalEntityType.EXPENSE_PAYMENT, payment_id)
        return result.external_entity_id

    async def sync_invoice(self, account_id: uuid.UUID, invoice_id: str) -> str:
        result = await self.sync_entity(account_id, LocalEntityType.INVOICE, invoice_id)
        return result.external_entity_id

    async def sync_invoice_payment(self, account_id: uuid.UUID, payment_id: str) -> str:
        result = await self.sync_entity(account_id, LocalEntityType.INVOICE_PAYMENT, payment_id)
        return result.external_entity_id

    async def sync_many(
        self,
        account_id: uuid.UUID,
        local_type: LocalEntityType,
        local_ids: Iterable[str],
    ) -> BatchSyncResult:
        """Sync several entities of one type, collecting a result per id.

        Entity-level failures are reported per item; losing the connection
        aborts the whole batch since every remaining item would fail the same way.
        """
        connection = await self._require_connection(account_id, local_type)
        ids = list(dict.fromkeys(local_ids))
        keys = {local_id: self._ledger_id(account_id, local_type, local_id) for local_id in ids}
        existing = await self.ledger.find_by_local_ids(local_type, keys.values())

        result = BatchSyncResult(local_entity_type=local_type)
        for local_id in ids:
            reference = existing.get(keys[local_id])
            # Foreign or stale references go through _sync, which rejects and logs them.
            if reference is not None and self._reference_usable(connection, reference):
                result.items.append(
                    BatchSyncItem(
                        local_entity_id=local_id,
                        status="already_synced",
                        external_entity_id=reference.external_entity_id,
                    )
                )
                continue
            try:
                external_id = await self._sync(connection, local_type, local_id)
            except (NoConnection, TokenRefreshFailed):
                raise
            except SyncError as exc:
                result.items.append(
                    BatchSyncItem(
                        local_entity_id=local_id,
                        status="failed",
                        error=exc.code,
                        message=str(exc),
                        retriable=exc.retriable,
                    )
                )
            else:
                result.items.append(
                    BatchSyncItem(local_entity_id=local_id, status="synced", external_entity_id=external_id)
                )

        self.logger.info(
            "qbo_batch_sync_finished",
            extra={
                "account_id": str(account_id),
                "local_type": local_type.value,
                "total": len(result.items),
                "failed": len(result.failed),
            },
        )
        return result

    async def get_sync_status(
        self,
        account_id: uuid.UUID,
        local_type: LocalEntityType,
        local_id: str,
    ) -> SyncStatusRead:
        reference = await self.ledger.find(local_type, self._ledger_id(account_id, local_type, local_id))
        if reference is not None and reference.account_id != account_id:
            raise LocalEntityNotFound(local_type.value, local_id)
        if reference is None:
            model = MODELS.get(local_type)
            if model is not None:
                await self._load(model, local_type, local_id, account_id)
            return SyncStatusRead(local_entity_type=local_type, local_entity_id=local_id, status="unsynced")
        return SyncStatusRead(
            local_entity_type=local_type,
            local_entity_id=local_id,
            status="synced",
            external_entity_id=reference.external_entity_id,
            external_entity_type=reference.external_entity_type,
            synced_at=reference.created_at,
        )

    async def _require_connection(
        self,
        account_id: uuid.UUID,
        local_type: LocalEntityType,
        local_id: Optional[str] = None,
    ) -> Connection:
        connection = await self.token_store.get_connection(account_id)
        if connection is None:
            error = NoConnection(str(account_id))
            self.logger.warning(
                "qbo_sync_not_connected",
                extra={"account_id": str(account_id), "local_type": local_type.value, "local_id": local_id},
            )
            await self.sync_log.record(
                account_id,
                action=f"{local_type.value}:create",
                status="error",
                local_type=local_type.value,
                local_id=local_id,
                payload={"code": error.code},
                error_message=str(error),
            )
            raise error
        set_request_context(account_id=str(account_id), realm_id=connection.realm_id)
        return connection

    def _ledger_id(self, account_id: uuid.UUID, local_type: LocalEntityType, local_id: str) -> str:
        if local_type is LocalEntityType.VENDOR:
            return vendor_key(account_id, local_id)
        return local_id

    def _lock_for(self, local_type: LocalEntityType, ledger_id: str) -> asyncio.Lock:
        key = (local_type, ledger_id)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def _reference_usable(self, connection: Connection, reference: EntityReference) -> bool:
        return reference.account_id == connection.account_id and reference.realm_id == connection.realm_id

    async def _existing_reference(
        self,
        connection: Connection,
        local_type: LocalEntityType,
        ledger_id: str,
        local_id: str,
    ) -> Optional[EntityReference]:
        reference = await self.ledger.find(local_type, ledger_id)
        if reference is None or self._reference_usable(connection, reference):
            return reference
        if reference.account_id != connection.account_id:
            raise LocalEntityNotFound(local_type.value, local_id)
        # The account reconnected to another QBO company; the old id means nothing there.
        self.logger.warning(
            "qbo_realm_mismatch",
            extra={
                "local_type": local_type.value,
                "local_id": local_id,
                "external_id": reference.external_entity_id,
                "reference_realm_id": reference.realm_id,
            },
        )
        raise RealmMismatch(local_type.value, local_id, reference.realm_id, connection.realm_id)

    async def _sync(self, connection: Connection, local_type: LocalEntityType, local_id: str) -> str:
        ledger_id = self._ledger_id(connection.account_id, local_type, local_id)
        try:
            reference = await self._existing_reference(connection, local_type, ledger_id, local_id)
            if reference is not None:
                return reference.external_entity_id

            lock = self._lock_for(local_type, ledger_id)
            async with lock:
                reference = await self._existing_reference(connection, local_type, ledger_id, local_id)
                if reference is not None:
                    return reference.external_entity_id
                handler = self._handlers[local_type]
                return await handler(connection, ledger_id, local_id)
        except SyncError as exc:
            await self._record_failure(connection, local_type, ledger_id, local_id, exc)
            raise
        except Exception as exc:
            self.logger.exception(
                "qbo_sync_unexpected_error",
                extra={"local_type": local_type.value, "local_id": local_id},
            )
            error = InternalSyncError(local_type.value, local_id, exc)
            await self._record_failure(connection, local_type, ledger_id, local_id, error)
            raise error from exc

    async def _record_failure(
        self,
        connection: Connection,
        local_type: LocalEntityType,
        ledger_id: str,
        local_id: str,
        exc: SyncError,
    ) -> None:
        self.logger.warning(
            "qbo_sync_failed",
            extra={
                "local_type": local_type.value,
                "local_id": local_id,
                "error_code": exc.code,
                "retriable": exc.retriable,
            },
        )
        await self.sync_log.record(
            connection.account_id,
            action=f"{local_type.value}:create",
            status="error",
            local_type=local_type.value,
            local_id=ledger_id,
            payload={"code": exc.code, "details": exc.details()},
            error_message=str(exc),
        )

    async def _dependency(self, connection: Connection, local_type: LocalEntityType, local_id: str) -> str:
        try:
            return await self._sync(connection, local_type, local_id)
        except (NoConnection, TokenRefreshFailed):
            raise
        except SyncError as exc:
            raise DependencyUnresolved(local_type.value, local_id, exc) from exc

    async def _load(
        self,
        model: type[ModelT],
        local_type: LocalEntityType,
        local_id: str,
        account_id: uuid.UUID,
    ) -> ModelT:
        try:
            entity_id = uuid.UUID(str(local_id))
        except ValueError as exc:
            raise LocalEntityNotFound(local_type.value, local_id) from exc
        async with self.session_factory() as session:
            row = await repo.get_owned(session, model, entity_id, account_id)
        if row is None:
            raise LocalEntityNotFound(local_type.value, local_id)
        return row

    async def _with_token(self, connection: Connection, call: Callable[[str], Awaitable[T]]) -> T:
        """Run ``call`` with a valid access token, refreshing once after a 401."""
        token = await self.token_store.get_valid_access_token(connection.account_id)
        try:
            return await call(token)
        except ExternalApiError as exc:
            if not exc.unauthorized:
                raise
            self.logger.warning(
                "qbo_unauthorized",
                extra={"account_id": str(connection.account_id), "realm_id": connection.realm_id},
            )
            token = await self.token_store.force_refresh(connection.account_id, token)
            return await call(token)

    async def _create(
        self,
        connection: Connection,
        local_type: LocalEntityType,
        ledger_id: str,
        payload: dict[str, Any],
        *,
        display_name: Optional[str] = None,
    ) -> str:
        resource = RESOURCES[local_type]
        realm_id = connection.realm_id
        request_id = build_request_id(realm_id, local_type, ledger_id, payload)
        log_context = {
            "account_id": str(connection.account_id),
            "realm_id": realm_id,
            "local_type": local_type.value,
            "local_id": ledger_id,
            "resource": resource.path,
            "request_id": request_id,
        }
        log_sync_started(payload=payload, **log_context)

        async def call(token: str) -> tuple[dict[str, Any], float]:
            return await self.qbo_client.create(resource, token, realm_id, payload, request_id=request_id)

        try:
            entity, latency_ms = await self._with_token(connection, call)
        except ExternalApiError as exc:
            adopted = None
            if exc.error_code == DUPLICATE_NAME_ERROR and display_name:
                adopted = await self._find_by_name(connection, resource, display_name)
            if adopted is None:
                log_sync_finished(
                    result="error",
                    qbo_status_code=exc.status_code,
                    error_code=exc.error_code,
                    error_message=exc.message,
                    **log_context,
                )
                raise
            self.logger.info(
                "qbo_duplicate_name_adopted",
                extra={"resource": resource.entity, "external_id": adopted["Id"]},
            )
            entity, latency_ms = adopted, None
        except SyncError as exc:
            log_sync_finished(result="error", error_code=exc.code, error_message=str(exc), **log_context)
            raise

        external_id = await self._store(connection, local_type, ledger_id, str(entity["Id"]))
        log_sync_finished(result="success", external_id=external_id, latency_ms=latency_ms, **log_context)
        await self.sync_log.record(
            connection.account_id,
            action=f"{local_type.value}:create",
            status="success",
            local_type=local_type.value,
            local_id=ledger_id,
            payload={"resource": resource.path, "external_id": external_id, "request_id": request_id},
        )
        return external_id

    async def _find_by_name(
        self,
        connection: Connection,
        resource: QBOResource,
        display_name: str,
    ) -> Optional[dict[str, Any]]:
        async def call(token: str) -> Optional[dict[str, Any]]:
            return await self.qbo_client.find_by_display_name(resource, token, connection.realm_id, display_name)

        return await self._with_token(connection, call)

    async def _store(
        self,
        connection: Connection,
        local_type: LocalEntityType,
        ledger_id: str,
        external_id: str,
    ) -> str:
        try:
            await self.ledger.store(
                account_id=connection.account_id,
                realm_id=connection.realm_id,
                local_type=local_type,
                local_id=ledger_id,
                external_id=external_id,
                external_type=RESOURCES[local_type].external_type,
            )
        except DuplicateReference as exc:
            # Another worker linked this entity first; ours stays in QBO unreferenced.
            self.logger.warning(
                "qbo_orphan_entity",
                extra={
                    "local_type": local_type.value,
                    "local_id": ledger_id,
                    "orphan_external_id": external_id,
                    "external_id": exc.existing_external_id,
                },
            )
            await self.sync_log.record(
                connection.account_id,
                action=f"{local_type.value}:create",
                status="error",
                local_type=local_type.value,
                local_id=ledger_id,
                payload={"orphan_external_id": external_id, "external_id": exc.existing_external_id},
                error_message=str(exc),
            )
            return exc.existing_external_id
        return external_id

    async def _adopt(
        self,
        connection: Connection,
        local_type: LocalEntityType,
        ledger_id: str,
        entity: dict[str, Any],
    ) -> str:
        external_id = await self._store(connection, local_type, ledger_id, str(entity["Id"]))
        await self.sync_log.record(
            connection.account_id,
            action=f"{local_type.value}:adopt",
            status="success",
            local_type=local_type.value,
            local_id=ledger_id,
            payload={"resource": RESOURCES[local_type].path, "external_id": external_id},
        )
        return external_id

    async def _sync_client(self, connection: Connection, ledger_id: str, local_id: str) -> str:
        client = await self._load(Client, LocalEntityType.CLIENT, local_id, connection.account_id)
        payload = mapper.map_client_to_customer(client)
        return await self._create(
            connection,
            LocalEntityType.CLIENT,
            ledger_id,
            payload,
            display_name=payload["DisplayName"],
        )

    async def _sync_vendor(self, connection: Connection, ledger_id: str, payee: str) -> str:
        payload = mapper.map_payee_to_vendor(payee)
        existing = await self._find_by_name(connection, QBOResource.VENDOR, payload["DisplayName"])
        if existing is not None:
            return await self._adopt(connection, LocalEntityType.VENDOR, ledger_id, existing)
        return await self._create(
            connection,
            LocalEntityType.VENDOR,
            ledger_id,
            payload,
            display_name=payload["DisplayName"],
        )

    async def _sync_expense(self, connection: Connection, ledger_id: str, local_id: str) -> str:
        expense = await self._load(Expense, LocalEntityType.EXPENSE, local_id, connection.account_id)
        vendor_id = await self._dependency(connection, LocalEntityType.VENDOR, expense.payee)
        customer_id = None
        if expense.client_id is not None:
            customer_id = await self._dependency(connection, LocalEntityType.CLIENT, str(expense.client_id))
        payload = mapper.map_expense_to_bill(
            expense,
            vendor_id,
            self.settings.qbo_expense_account_id,
            customer_id,
        )
        return await self._create(connection, LocalEntityType.EXPENSE, ledger_id, payload)

    async def _sync_expense_payment(self, connection: Connection, ledger_id: str, local_id: str) -> str:
        payment = await self._load(ExpensePayment, LocalEntityType.EXPENSE_PAYMENT, local_id, connection.account_id)
        expense = await self._load(Expense, LocalEntityType.EXPENSE, str(payment.expense_id), connection.account_id)
        bill_id = await self._dependency(connection, LocalEntityType.EXPENSE, str(expense.id))
        vendor_id = await self._dependency(connection, LocalEntityType.VENDOR, expense.payee)
        payload = mapper.map_expense_payment_to_bill_payment(
            payment,
            vendor_id,
            bill_id,
            self.settings.qbo_bank_account_id,
        )
        return await self._create(connection, LocalEntityType.EXPENSE_PAYMENT, ledger_id, payload)

    async def _sync_invoice(self, connection: Connection, ledger_id: str, local_id: str) -> str:
        invoice = await self._load(Invoice, LocalEntityType.INVOICE, local_id, connection.account_id)
        customer_id = await self._dependency(connection, LocalEntityType.CLIENT, str(invoice.client_id))
        payload = mapper.map_invoice_to_external_invoice(
            invoice,
            customer_id,
            self.settings.qbo_income_item_id,
        )
        return await self._create(connection, LocalEntityType.INVOICE, ledger_id, payload)

    async def _sync_invoice_payment(self, connection: Connection, ledger_id: str, local_id: str) -> str:
        payment = await self._load(InvoicePayment, LocalEntityType.INVOICE_PAYMENT, local_id, connection.account_id)
        invoice = await self._load(Invoice, LocalEntityType.INVOICE, str(payment.invoice_id), connection.account_id)
        invoice_external_id = await self._dependency(connection, LocalEntityType.INVOICE, str(invoice.id))
        customer_id = await self._dependency(connection, LocalEntityType.CLIENT, str(invoice.client_id))
        payload = mapper.map_invoice_payment_to_payment(payment, customer_id, invoice_external_id)
        return await self._create(connection, LocalEntityType.INVOICE_PAYMENT, ledger_id, payload)


def build_sync_orchestrator(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> SyncOrchestrator:
    sync_log = SyncLogWriter(session_factory)
    token_store = TokenStore(
        settings,
        session_factory,
        QuickBooksOAuthClient(settings, transport=transport),
        sync_log,
    )
    return SyncOrchestrator(
        settings,
        token_store,
        EntityReferenceLedger(session_factory),
        QuickBooksClient(settings, transport=transport),
        sync_log,
        session_factory,
    )
