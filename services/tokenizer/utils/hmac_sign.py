# services/tokenizer/utils/hmac_sign.py
from __future__ import annotations

import hashlib
import hmac
import secrets
from datetime import datetime, timezone
from typing import Optional, Union

ALLOWED_NONCE_BYTES = (16, 32)

BytesOrStr = Union[bytes, str]


def _to_bytes(value: BytesOrStr, encoding: str = "utf-8") -> bytes:
    if isinstance(value, bytes):
        return value
    return value.encode(encoding)


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """UTC timestamp in YYYYMMDDHHmmss format, e.g. "20251103170000"."""
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    else:
        now = now.astimezone(timezone.utc)
    return now.strftime("%Y%m%d%H%M%S")


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)


def generate_nonce(num_bytes: int = 16) -> str:
    # secrets draws from the OS CSPRNG; any failure there must propagate
    if num_bytes not in ALLOWED_NONCE_BYTES:
        raise ValueError(f"nonce size must be one of {ALLOWED_NONCE_BYTES} bytes, got {num_bytes}")
    return secrets.token_hex(num_bytes)


def hmac_sha256_hex(secret_key: BytesOrStr, message: BytesOrStr, encoding: str = "utf-8") -> str:
    mac = hmac.new(_to_bytes(secret_key), msg=_to_bytes(message, encoding), digestmod=hashlib.sha256)
    return mac.hexdigest()


def signatures_match(expected: str, received: str) -> bool:
    """Case-insensitive, constant-time comparison of two hex signatures."""
    if not expected or not received:
        return False
    try:
        return hmac.compare_digest(expected.upper().encode("ascii"), received.upper().encode("ascii"))
    except UnicodeEncodeError:
        return False


def mask_pan(pan: str) -> str:
    if len(pan) <= 10:
        return "*" * len(pan)
    return pan[:6] + "******" + pan[-4:]


def mask_secret(secret: str) -> str:
    return secret[:3] + "*" * max(0, len(secret) - 3)
