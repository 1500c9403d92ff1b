"""Translation of local rows into QBO create payloads.

QBO amount convention: ``Amount`` and ``TotalAmt`` on Bill, BillPayment, Invoice
and Payment are major currency units (dollars, not cents) with two decimal
places. Amounts stay ``Decimal`` until ``to_qbo_amount`` quantizes them with
banker's rounding at the payload boundary.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Any, Optional, Protocol

from qbo_sync.core.errors import MappingError


CENT = Decimal("0.01")

PAYMENT_METHODS = {
    "cc": "CreditCard",
    "credit_card": "CreditCard",
    "check": "Check",
    "transfer": "EFT",
    "cash": "Cash",
}


class ClientLike(Protocol):
    id: Any
    name: str
    company_name: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    address_line1: Optional[str]
    address_line2: Optional[str]
    city: Optional[str]
    state: Optional[str]
    postal_code: Optional[str]
    country: Optional[str]


class ExpenseLike(Protocol):
    id: Any
    name: str
    payee: str
    amount: Decimal
    expense_date: Optional[date]
    created_at: datetime
    expense_number: Optional[str]
    notes: Optional[str]


class ExpensePaymentLike(Protocol):
    id: Any
    amount: Decimal
    payment_date: Optional[date]
    created_at: datetime
    payment_reference: Optional[str]
    notes: Optional[str]


class InvoiceLike(Protocol):
    id: Any
    invoice_number: Optional[str]
    description: Optional[str]
    amount: Decimal
    invoice_date: Optional[date]
    created_at: datetime
    due_date: Optional[date]
    notes: Optional[str]


class InvoicePaymentLike(Protocol):
    id: Any
    amount: Decimal
    payment_date: Optional[date]
    created_at: datetime
    payment_method: Optional[str]
    payment_reference: Optional[str]
    notes: Optional[str]


def to_decimal(value: Any, *, field: str = "amount") -> Decimal:
    if isinstance(value, Decimal):
        return value
    # str() first so a float 0.1 stays 0.1 instead of its binary expansion
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise MappingError(f"Invalid monetary value for {field}: {value!r}", field=field) from exc


def to_qbo_amount(value: Any, *, field: str = "amount") -> float:
    """Quantize to cents (half-even) and emit the JSON number QBO expects.

    The float returned is the nearest double to a two-decimal value, so its
    shortest repr (what ``json.dumps`` writes) is exactly that decimal.
    """
    amount = to_decimal(value, field=field)
    if not amount.is_finite():
        raise MappingError(f"Invalid monetary value for {field}: {value!r}", field=field)
    quantized = amount.quantize(CENT, rounding=ROUND_HALF_EVEN)
    if quantized <= 0:
        raise MappingError(f"{field} must be greater than zero", field=field)
    return float(quantized)


def _require_ref(value: Optional[str], field: str, hint: str) -> dict[str, str]:
    if not value or not str(value).strip():
        raise MappingError(hint, field=field)
    return {"value": str(value)}


def _txn_date(value: Optional[date], created_at: datetime) -> str:
    # Undated rows take the day they were recorded, never the day they sync.
    return (value or created_at.date()).isoformat()


def _display_name(value: Optional[str], field: str) -> str:
    cleaned = " ".join((value or "").split())
    if not cleaned:
        raise MappingError(f"{field} is required", field=field)
    # QBO rejects DisplayName values containing ':' and caps the length at 500.
    return cleaned.replace(":", "-")[:500]


def map_client_to_customer(client: ClientLike) -> dict[str, Any]:
    payload: dict[str, Any] = {"DisplayName": _display_name(client.name, "name")}
    if client.company_name:
        payload["CompanyName"] = client.company_name
    if client.email:
        payload["PrimaryEmailAddr"] = {"Address": client.email}
    if client.phone:
        payload["PrimaryPhone"] = {"FreeFormNumber": client.phone}
    if client.address_line1:
        address = {
            "Line1": client.address_line1,
            "Line2": client.address_line2,
            "City": client.city,
            "CountrySubDivisionCode": client.state,
            "PostalCode": client.postal_code,
            "Country": client.country,
        }
        payload["BillAddr"] = {key: value for key, value in address.items() if value}
    return payload


def map_payee_to_vendor(payee: str) -> dict[str, Any]:
    name = _display_name(payee, "payee")
    return {"DisplayName": name, "CompanyName": name}


def map_expense_to_bill(
    expense: ExpenseLike,
    vendor_external_id: Optional[str],
    expense_account_id: str,
    customer_external_id: Optional[str] = None,
) -> dict[str, Any]:
    vendor_ref = _require_ref(
        vendor_external_id,
        "vendor_external_id",
        f"Vendor '{expense.payee}' must be synced before expense {expense.id}",
    )
    detail: dict[str, Any] = {
        "AccountRef": _require_ref(expense_account_id, "expense_account_id", "Expense account is not configured"),
    }
    if customer_external_id:
        detail["CustomerRef"] = {"value": str(customer_external_id)}
        detail["BillableStatus"] = "Billable"

    payload: dict[str, Any] = {
        "VendorRef": vendor_ref,
        "TxnDate": _txn_date(expense.expense_date, expense.created_at),
        "Line": [
            {
                "DetailType": "AccountBasedExpenseLineDetail",
                "Amount": to_qbo_amount(expense.amount),
                "Description": expense.name or f"Expense {expense.id}",
                "AccountBasedExpenseLineDetail": detail,
            }
        ],
        "PrivateNote": expense.notes or f"Expense ID: {expense.id}",
    }
    if expense.expense_number:
        payload["DocNumber"] = expense.expense_number
    return payload


def map_expense_payment_to_bill_payment(
    payment: ExpensePaymentLike,
    vendor_external_id: Optional[str],
    bill_external_id: Optional[str],
    bank_account_id: Optional[str] = None,
) -> dict[str, Any]:
    vendor_ref = _require_ref(
        vendor_external_id,
        "vendor_external_id",
        f"Vendor must be synced before payment {payment.id}",
    )
    bill_ref = _require_ref(
        bill_external_id,
        "bill_external_id",
        f"Expense must be synced as a bill before payment {payment.id}",
    )
    amount = to_qbo_amount(payment.amount)
    payload: dict[str, Any] = {
        "VendorRef": vendor_ref,
        "PayType": "Check",
        "TotalAmt": amount,
        "TxnDate": _txn_date(payment.payment_date, payment.created_at),
        "Line": [
            {
                "Amount": amount,
                "LinkedTxn": [{"TxnId": bill_ref["value"], "TxnType": "Bill"}],
            }
        ],
        "PrivateNote": payment.notes or f"Payment ID: {payment.id}",
    }
    if bank_account_id:
        payload["CheckPayment"] = {"BankAccountRef": {"value": bank_account_id}}
    if payment.payment_reference:
        payload["DocNumber"] = payment.payment_reference
    return payload


def map_invoice_to_external_invoice(
    invoice: InvoiceLike,
    customer_external_id: Optional[str],
    income_item_id: str,
) -> dict[str, Any]:
    customer_ref = _require_ref(
        customer_external_id,
        "customer_external_id",
        f"Client must be synced before invoice {invoice.id}",
    )
    payload: dict[str, Any] = {
        "CustomerRef": customer_ref,
        "TxnDate": _txn_date(invoice.invoice_date, invoice.created_at),
        "Line": [
            {
                "DetailType": "SalesItemLineDetail",
                "Amount": to_qbo_amount(invoice.amount),
                "Description": invoice.description or f"Invoice {invoice.invoice_number or invoice.id}",
                "SalesItemLineDetail": {
                    "ItemRef": _require_ref(income_item_id, "income_item_id", "Income item is not configured"),
                },
            }
        ],
        "PrivateNote": invoice.notes or f"Invoice ID: {invoice.id}",
    }
    if invoice.due_date:
        payload["DueDate"] = invoice.due_date.isoformat()
    if invoice.invoice_number:
        payload["DocNumber"] = invoice.invoice_number
    return payload


def map_invoice_payment_to_payment(
    payment: InvoicePaymentLike,
    customer_external_id: Optional[str],
    invoice_external_id: Optional[str],
    payment_method: Optional[str] = None,
) -> dict[str, Any]:
    customer_ref = _require_ref(
        customer_external_id,
        "customer_external_id",
        f"Client must be synced before payment {payment.id}",
    )
    invoice_ref = _require_ref(
        invoice_external_id,
        "invoice_external_id",
        f"Invoice must be synced before payment {payment.id}",
    )
    amount = to_qbo_amount(payment.amount)
    payload: dict[str, Any] = {
        "CustomerRef": customer_ref,
        "TotalAmt": amount,
        "TxnDate": _txn_date(payment.payment_date, payment.created_at),
        "Line": [
            {
                "Amount": amount,
                "LinkedTxn": [{"TxnId": invoice_ref["value"], "TxnType": "Invoice"}],
            }
        ],
        "PrivateNote": payment.notes or f"Payment ID: {payment.id}",
    }
    if payment.payment_reference:
        payload["PaymentRefNum"] = payment.payment_reference
    method = PAYMENT_METHODS.get((payment_method or payment.payment_method or "").lower())
    if method:
        payload["PaymentType"] = method
    return payload
