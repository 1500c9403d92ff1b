from __future__ import annotations

import uuid
from typing import Any

from qbo_sync.schemas.sync import LocalEntityType
from qbo_sync.utils.hashing import payload_fingerprint


# Fixed namespace so the same create request always yields the same QBO requestid.
REQUEST_ID_NAMESPACE = uuid.UUID("6f1f3c52-3b0e-4b8e-9f5c-2d3c7a1f9e41")


def build_request_id(
    realm_id: str,
    local_type: LocalEntityType,
    local_id: str,
    payload: dict[str, Any],
) -> str:
    """QBO `requestid` for creating the external twin of a local entity.

    QBO replays the original response for a repeated requestid, faults
    included. Resending an identical payload after a lost response therefore
    returns the entity the first attempt created, while a corrected payload
    hashes to a new key and is processed afresh.
    """
    name = f"{realm_id}|{local_type.value}|{local_id}|{payload_fingerprint(payload)}"
    return str(uuid.uuid5(REQUEST_ID_NAMESPACE, name))


def vendor_key(account_id: uuid.UUID, payee: str) -> str:
    """Ledger id for a payee, scoped to the owning account."""
    normalized = " ".join(payee.split()).lower()
    return f"{account_id}:name:{normalized}"
