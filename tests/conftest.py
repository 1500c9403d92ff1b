from __future__ import annotations

import asyncio
import json
import os
import re
import uuid
from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Optional
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.fernet import Fernet

FERNET_KEY = os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("QBO_CLIENT_ID", "client-id")
os.environ.setdefault("QBO_CLIENT_SECRET", "client-secret")
os.environ.setdefault("QBO_REDIRECT_URI", "http://localhost:8000/auth/callback")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from qbo_sync.core.config import Settings  # noqa: E402
from qbo_sync.core.security import encrypt_refresh_token  # noqa: E402
from qbo_sync.db import repo  # noqa: E402
from qbo_sync.db.models import (  # noqa: E402
    Base,
    Client,
    Connection,
    Expense,
    ExpensePayment,
    Invoice,
    InvoicePayment,
)
from qbo_sync.db.session import create_engine_for, create_session_factory  # noqa: E402
from qbo_sync.services.orchestrator import SyncOrchestrator, build_sync_orchestrator  # noqa: E402


REALM_ID = "9130357"
TOKEN_PATH = "/oauth2/v1/tokens/bearer"
ENTITY_NAMES = {
    "customer": "Customer",
    "vendor": "Vendor",
    "bill": "Bill",
    "billpayment": "BillPayment",
    "invoice": "Invoice",
    "payment": "Payment",
}
QUERY_PATTERN = re.compile(r"from (\w+) where DisplayName = '((?:[^'\\]|\\.)*)'", re.IGNORECASE)


def fault(status_code: int, message: str, code: str, detail: Optional[str] = None) -> httpx.Response:
    error = {"Message": message, "code": code}
    if detail:
        error["Detail"] = detail
    return httpx.Response(status_code, json={"Fault": {"Error": [error], "type": "ValidationFault"}})


class FakeQuickBooks:
    """In-memory stand-in for the Intuit token endpoint and the QBO accounting API."""

    def __init__(self) -> None:
        self.next_id = 100
        self.token_counter = 0
        self.entities: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.by_request_id: dict[str, dict[str, Any]] = {}
        self.faults_by_request_id: dict[str, tuple[int, bytes]] = {}
        self.posts: list[tuple[str, dict[str, Any]]] = []
        self.queries: list[str] = []
        self.token_calls: list[dict[str, str]] = []
        self.rejected_tokens: set[str] = set()
        self.failures: dict[str, list[httpx.Response]] = defaultdict(list)
        self.drop_responses: dict[str, int] = defaultdict(int)
        self.token_failures: list[httpx.Response] = []
        self.token_delay = 0.0
        self.honor_request_id = True
        self._gates: dict[str, tuple[int, asyncio.Event]] = {}
        self._arrivals: dict[str, int] = defaultdict(int)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def hold_creates(self, resource: str, count: int) -> None:
        """Park creates for ``resource`` until ``count`` of them are in flight."""
        self._gates[resource] = (count, asyncio.Event())

    def add_existing(self, entity: str, **fields: Any) -> dict[str, Any]:
        record = {"Id": str(self.next_id), **fields}
        self.next_id += 1
        self.entities[entity].append(record)
        return record

    def created(self, entity: str) -> list[dict[str, Any]]:
        return self.entities[entity]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == TOKEN_PATH:
            return await self._token(request)
        return await self._api(request)

    async def _token(self, request: httpx.Request) -> httpx.Response:
        form = {key: values[0] for key, values in parse_qs(request.content.decode()).items()}
        self.token_calls.append(form)
        if self.token_delay:
            await asyncio.sleep(self.token_delay)
        if self.token_failures:
            return self.token_failures.pop(0)
        self.token_counter += 1
        return httpx.Response(
            200,
            json={
                "access_token": f"access-{self.token_counter}",
                "refresh_token": f"refresh-{self.token_counter}",
                "expires_in": 3600,
                "x_refresh_token_expires_in": 8726400,
                "token_type": "bearer",
                "scope": "com.intuit.quickbooks.accounting",
            },
        )

    async def _api(self, request: httpx.Request) -> httpx.Response:
        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.rejected_tokens:
            return fault(401, "AuthenticationFailed", "3200")

        endpoint = request.url.path.rsplit("/", 1)[-1]
        if request.method == "GET" and endpoint == "query":
            return self._query(request.url.params["query"])

        payload = json.loads(request.content)
        self.posts.append((endpoint, payload))
        if endpoint in self._gates:
            count, event = self._gates[endpoint]
            self._arrivals[endpoint] += 1
            if self._arrivals[endpoint] >= count:
                event.set()
            await event.wait()

        entity = ENTITY_NAMES[endpoint]
        request_id = request.url.params.get("requestid")
        if self.honor_request_id and request_id in self.by_request_id:
            return httpx.Response(200, json={entity: self.by_request_id[request_id]})
        if self.honor_request_id and request_id in self.faults_by_request_id:
            status_code, content = self.faults_by_request_id[request_id]
            return httpx.Response(status_code, content=content, headers={"Content-Type": "application/json"})

        if self.failures[endpoint]:
            return self._answer_fault(request_id, self.failures[endpoint].pop(0))

        name = payload.get("DisplayName")
        if name and any(existing.get("DisplayName") == name for existing in self.entities[entity]):
            duplicate = fault(400, "Duplicate Name Exists Error", "6240", f"The name supplied already exists. : {name}")
            return self._answer_fault(request_id, duplicate)

        record = self.add_existing(entity, **payload)
        if request_id:
            self.by_request_id[request_id] = record
        if self.drop_responses[endpoint]:
            self.drop_responses[endpoint] -= 1
            raise httpx.ReadTimeout("response lost", request=request)
        return httpx.Response(200, json={entity: record, "time": datetime.now(timezone.utc).isoformat()})

    def _answer_fault(self, request_id: Optional[str], response: httpx.Response) -> httpx.Response:
        # QBO stores validation faults under the requestid; throttling and outages are not stored.
        if request_id and 400 <= response.status_code < 500 and response.status_code != 429:
            self.faults_by_request_id[request_id] = (response.status_code, response.content)
        return response

    def _query(self, statement: str) -> httpx.Response:
        self.queries.append(statement)
        match = QUERY_PATTERN.search(statement)
        if match is None:
            return httpx.Response(200, json={"QueryResponse": {}})
        entity, raw_name = match.groups()
        name = re.sub(r"\\(.)", r"\1", raw_name)
        found = [record for record in self.entities[entity] if record.get("DisplayName") == name]
        return httpx.Response(200, json={"QueryResponse": {entity: found[:1]} if found else {}})


class Seeder:
    """Inserts local rows and connections owned by a single test account."""

    def __init__(self, session_factory, settings: Settings) -> None:
        self.session_factory = session_factory
        self.settings = settings
        self.account_id = uuid.uuid4()

    async def connection(
        self,
        *,
        access_token: str = "access-0",
        refresh_token: str = "refresh-0",
        expires_in: int = 3600,
        refresh_expires_in: int = 8726400,
        account_id: Optional[uuid.UUID] = None,
        realm_id: str = REALM_ID,
    ) -> Connection:
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session, session.begin():
            return await repo.upsert_connection(
                session,
                account_id=account_id or self.account_id,
                realm_id=realm_id,
                access_token=access_token,
                refresh_token_enc=encrypt_refresh_token(self.settings.fernet_key, refresh_token),
                access_expires_at=now + timedelta(seconds=expires_in),
                refresh_expires_at=now + timedelta(seconds=refresh_expires_in),
                scopes=["com.intuit.quickbooks.accounting"],
                now=now,
            )

    async def client(self, name: str = "Jane Builder", **fields: Any) -> Client:
        return await self._add(Client(account_id=self.account_id, name=name, **fields))

    async def expense(
        self,
        *,
        payee: str = "Acme Co",
        amount: Decimal = Decimal("250.00"),
        client_id: Optional[uuid.UUID] = None,
        **fields: Any,
    ) -> Expense:
        fields.setdefault("name", "Lumber")
        fields.setdefault("expense_date", date(2024, 5, 1))
        return await self._add(
            Expense(account_id=self.account_id, payee=payee, amount=amount, client_id=client_id, **fields)
        )

    async def expense_payment(self, expense_id: uuid.UUID, amount: Decimal = Decimal("250.00")) -> ExpensePayment:
        return await self._add(
            ExpensePayment(
                account_id=self.account_id,
                expense_id=expense_id,
                amount=amount,
                payment_date=date(2024, 5, 3),
            )
        )

    async def invoice(self, client_id: uuid.UUID, amount: Decimal = Decimal("1200.00"), **fields: Any) -> Invoice:
        fields.setdefault("invoice_number", "INV-1001")
        fields.setdefault("invoice_date", date(2024, 5, 2))
        return await self._add(Invoice(account_id=self.account_id, client_id=client_id, amount=amount, **fields))

    async def invoice_payment(
        self,
        invoice_id: uuid.UUID,
        amount: Decimal = Decimal("1200.00"),
        payment_method: Optional[str] = "check",
    ) -> InvoicePayment:
        return await self._add(
            InvoicePayment(
                account_id=self.account_id,
                invoice_id=invoice_id,
                amount=amount,
                payment_date=date(2024, 5, 10),
                payment_method=payment_method,
            )
        )

    async def _add(self, row):
        async with self.session_factory() as session, session.begin():
            session.add(row)
        return row


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        ENV="sandbox",
        API_KEY="test-key",
        FERNET_KEY=FERNET_KEY,
        QBO_CLIENT_ID="client-id",
        QBO_CLIENT_SECRET="client-secret",
        QBO_REDIRECT_URI="http://localhost:8000/auth/callback",
        QBO_EXPENSE_ACCOUNT_ID="7",
        QBO_INCOME_ITEM_ID="1",
        DATABASE_URL="sqlite+aiosqlite://",
        RETRY_MAX_ATTEMPTS=1,
    )


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield create_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def fake_qbo() -> FakeQuickBooks:
    return FakeQuickBooks()


@pytest.fixture
def seed(session_factory, settings) -> Seeder:
    return Seeder(session_factory, settings)


@pytest.fixture
def orchestrator(settings, session_factory, fake_qbo) -> SyncOrchestrator:
    return build_sync_orchestrator(settings, session_factory, transport=fake_qbo.transport)
