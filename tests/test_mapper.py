from __future__ import annotations

import json
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from qbo_sync.core.errors import MappingError
from qbo_sync.services import mapper


CREATED = datetime(2024, 4, 30, 15, 0, tzinfo=timezone.utc)


def make_expense(**overrides):
    values = {
        "id": "exp-1",
        "name": "Lumber",
        "payee": "Acme Co",
        "amount": Decimal("250.00"),
        "expense_date": date(2024, 5, 1),
        "created_at": CREATED,
        "expense_number": None,
        "notes": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def make_client(**overrides):
    values = {
        "id": "client-1",
        "name": "Jane Builder",
        "company_name": None,
        "email": None,
        "phone": None,
        "address_line1": None,
        "address_line2": None,
        "city": None,
        "state": None,
        "postal_code": None,
        "country": None,
    }
    values.update(overrides)
    return SimpleNamespace(**values)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        (Decimal("123.45"), 123.45),
        (Decimal("10.005"), 10.0),
        (Decimal("10.015"), 10.02),
        ("99.999", 100.0),
        (0.1, 0.1),
        (7, 7.0),
    ],
)
def test_to_qbo_amount_quantizes_half_even(value, expected):
    assert mapper.to_qbo_amount(value) == expected


def test_to_qbo_amount_round_trips_exactly_through_json():
    encoded = json.dumps({"Amount": mapper.to_qbo_amount(Decimal("123.45"))})
    decoded = json.loads(encoded, parse_float=Decimal)

    assert encoded == '{"Amount": 123.45}'
    assert decoded["Amount"] == Decimal("123.45")


@pytest.mark.parametrize("value", [Decimal("0"), Decimal("-5.00"), Decimal("0.004"), "abc", Decimal("NaN")])
def test_to_qbo_amount_rejects_non_positive_and_invalid(value):
    with pytest.raises(MappingError):
        mapper.to_qbo_amount(value)


def test_map_expense_to_bill_uses_vendor_and_account():
    payload = mapper.map_expense_to_bill(make_expense(expense_number="E-7"), "56", "7")

    assert payload["VendorRef"] == {"value": "56"}
    assert payload["TxnDate"] == "2024-05-01"
    assert payload["DocNumber"] == "E-7"
    assert payload["PrivateNote"] == "Expense ID: exp-1"
    line = payload["Line"][0]
    assert line["Amount"] == 250.0
    assert line["DetailType"] == "AccountBasedExpenseLineDetail"
    assert line["AccountBasedExpenseLineDetail"] == {"AccountRef": {"value": "7"}}


def test_undated_expense_uses_recorded_day():
    expense = make_expense(expense_date=None)

    first = mapper.map_expense_to_bill(expense, "56", "7")
    second = mapper.map_expense_to_bill(expense, "56", "7")

    assert first["TxnDate"] == "2024-04-30"
    assert first == second


def test_map_expense_to_bill_marks_billable_when_customer_given():
    payload = mapper.map_expense_to_bill(make_expense(), "56", "7", customer_external_id="12")

    detail = payload["Line"][0]["AccountBasedExpenseLineDetail"]
    assert detail["CustomerRef"] == {"value": "12"}
    assert detail["BillableStatus"] == "Billable"


@pytest.mark.parametrize("vendor_id", [None, "", "   "])
def test_map_expense_to_bill_requires_vendor(vendor_id):
    with pytest.raises(MappingError) as excinfo:
        mapper.map_expense_to_bill(make_expense(), vendor_id, "7")

    assert excinfo.value.field == "vendor_external_id"


def test_map_client_to_customer_builds_contact_blocks():
    client = make_client(
        name="  Jane   Builder ",
        company_name="Builder LLC",
        email="jane@example.com",
        phone="555-0100",
        address_line1="1 Main St",
        city="Austin",
        state="TX",
    )

    payload = mapper.map_client_to_customer(client)

    assert payload["DisplayName"] == "Jane Builder"
    assert payload["CompanyName"] == "Builder LLC"
    assert payload["PrimaryEmailAddr"] == {"Address": "jane@example.com"}
    assert payload["PrimaryPhone"] == {"FreeFormNumber": "555-0100"}
    assert payload["BillAddr"] == {"Line1": "1 Main St", "City": "Austin", "CountrySubDivisionCode": "TX"}


def test_map_client_to_customer_requires_name():
    with pytest.raises(MappingError):
        mapper.map_client_to_customer(make_client(name=" "))


def test_map_payee_to_vendor_strips_colons():
    assert mapper.map_payee_to_vendor("Acme: Supplies") == {
        "DisplayName": "Acme- Supplies",
        "CompanyName": "Acme- Supplies",
    }


def test_map_expense_payment_links_bill():
    payment = SimpleNamespace(
        id="pay-1",
        amount=Decimal("80.10"),
        payment_date=date(2024, 5, 3),
        created_at=CREATED,
        payment_reference="CHK-12",
        notes=None,
    )

    payload = mapper.map_expense_payment_to_bill_payment(payment, "56", "301", bank_account_id="35")

    assert payload["PayType"] == "Check"
    assert payload["TotalAmt"] == 80.1
    assert payload["CheckPayment"] == {"BankAccountRef": {"value": "35"}}
    assert payload["Line"][0]["LinkedTxn"] == [{"TxnId": "301", "TxnType": "Bill"}]
    assert payload["DocNumber"] == "CHK-12"


def test_map_expense_payment_requires_bill():
    payment = SimpleNamespace(
        id="pay-1",
        amount=Decimal("1"),
        payment_date=None,
        created_at=CREATED,
        payment_reference=None,
        notes=None,
    )

    with pytest.raises(MappingError) as excinfo:
        mapper.map_expense_payment_to_bill_payment(payment, "56", None)

    assert excinfo.value.field == "bill_external_id"


def test_map_invoice_sets_item_and_dates():
    invoice = SimpleNamespace(
        id="inv-1",
        invoice_number="INV-1001",
        description=None,
        amount=Decimal("1200"),
        invoice_date=date(2024, 5, 2),
        created_at=CREATED,
        due_date=date(2024, 6, 1),
        notes="Phase 1",
    )

    payload = mapper.map_invoice_to_external_invoice(invoice, "12", "1")

    assert payload["CustomerRef"] == {"value": "12"}
    assert payload["DueDate"] == "2024-06-01"
    assert payload["DocNumber"] == "INV-1001"
    assert payload["PrivateNote"] == "Phase 1"
    line = payload["Line"][0]
    assert line["Amount"] == 1200.0
    assert line["Description"] == "Invoice INV-1001"
    assert line["SalesItemLineDetail"] == {"ItemRef": {"value": "1"}}


def test_map_invoice_payment_translates_method():
    payment = SimpleNamespace(
        id="ip-1",
        amount=Decimal("600.00"),
        payment_date=date(2024, 5, 10),
        created_at=CREATED,
        payment_method="cc",
        payment_reference="R-9",
        notes=None,
    )

    payload = mapper.map_invoice_payment_to_payment(payment, "12", "401")

    assert payload["PaymentType"] == "CreditCard"
    assert payload["PaymentRefNum"] == "R-9"
    assert payload["TotalAmt"] == 600.0
    assert payload["Line"][0]["LinkedTxn"] == [{"TxnId": "401", "TxnType": "Invoice"}]


def test_map_invoice_payment_omits_unknown_method():
    payment = SimpleNamespace(
        id="ip-1",
        amount=Decimal("5"),
        payment_date=None,
        created_at=CREATED,
        payment_method="barter",
        payment_reference=None,
        notes=None,
    )

    assert "PaymentType" not in mapper.map_invoice_payment_to_payment(payment, "12", "401")
