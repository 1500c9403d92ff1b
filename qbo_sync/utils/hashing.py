from __future__ import annotations

import hashlib
import json
from typing import Any


def sha256_hex(value: bytes | str) -> str:
    if isinstance(value, str):
        value = value.encode("utf-8")
    return hashlib.sha256(value).hexdigest()


def payload_fingerprint(payload: Any) -> str:
    """Stable digest of a JSON payload, independent of key order."""
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return sha256_hex(serialized)
