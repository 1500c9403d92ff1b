from __future__ import annotations

import json
import secrets
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken


OAUTH_STATE_TTL_SECONDS = 600


@lru_cache(maxsize=4)
def _get_cipher(key: str) -> Fernet:
    return Fernet(key.encode("utf-8"))


def encrypt_refresh_token(key: str, value: str) -> str:
    cipher = _get_cipher(key)
    return cipher.encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_refresh_token(key: str, value: str) -> str:
    cipher = _get_cipher(key)
    try:
        decrypted = cipher.decrypt(value.encode("utf-8"))
    except InvalidToken as exc:
        raise ValueError("Invalid refresh token payload") from exc
    return decrypted.decode("utf-8")


def encode_oauth_state(key: str, account_id: str) -> str:
    """Build the opaque `state` sent to Intuit for the consent redirect."""
    cipher = _get_cipher(key)
    payload = {"account_id": account_id, "nonce": secrets.token_urlsafe(16)}
    serialized = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return cipher.encrypt(serialized).decode("utf-8")


def decode_oauth_state(key: str, token: str, *, ttl: Optional[int] = OAUTH_STATE_TTL_SECONDS) -> str:
    """Return the account id carried by a state token, rejecting stale or forged ones."""
    cipher = _get_cipher(key)
    try:
        decrypted = cipher.decrypt(token.encode("utf-8"), ttl=ttl)
    except InvalidToken as exc:
        raise ValueError("Invalid or expired OAuth state token") from exc
    data = json.loads(decrypted.decode("utf-8"))
    if not isinstance(data, dict) or not data.get("account_id"):
        raise ValueError("Invalid OAuth state payload")
    return str(data["account_id"])
