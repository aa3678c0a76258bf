# services/tokenizer/services/signature.py
from __future__ import annotations

import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Union

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, SecretStr

from ..utils.hmac_sign import (
    generate_nonce,
    generate_timestamp,
    hmac_sha256_hex,
    signatures_match,
)

SIGNATURE_HEADER = "X-SIGNATURE"
TIMESTAMP_HEADER = "X-TIMESTAMP"
REQUEST_ID_FIELD = "TOKEN_REQID"

# whitespace a JavaScript trim removes that can occur in a latin-1 body
TRAILING_WHITESPACE = " \t\r\n\x0b\x0c\xa0"

DiagnosticSink = Callable[[str, Dict[str, Any]], None]


def log_sink(event: str, fields: Dict[str, Any]) -> None:
    """Default diagnostic sink: signature internals go to the debug log."""
    logger.bind(event=event).debug("{} {}", event, fields)


class SigningContext(BaseModel):
    """Shared secret and merchant identity, fixed for the process lifetime."""

    model_config = ConfigDict(frozen=True)

    secret_key: SecretStr
    merchant_id: str = Field(..., min_length=1)
    nonce_bytes: int = 16
    response_encoding: str = "latin-1"

    def secret_bytes(self) -> bytes:
        return self.secret_key.get_secret_value().encode("utf-8")


class RequestSignature(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: str
    nonce: str
    signature: str
    message: str

    def headers(self) -> Dict[str, str]:
        return {SIGNATURE_HEADER: self.signature, TIMESTAMP_HEADER: self.timestamp}


class VerificationOutcome(BaseModel):
    model_config = ConfigDict(frozen=True)

    is_valid: bool
    expected_signature: str
    received_signature: str
    server_timestamp: str
    token_request_id: str


# ----------------- request side -----------------
def build_request_message(timestamp: str, nonce: str, merchant_id: str) -> str:
    return f"{timestamp}{nonce}{merchant_id}"


def sign_request(
    context: SigningContext,
    *,
    now: Optional[datetime] = None,
    nonce: Optional[str] = None,
    sink: Optional[DiagnosticSink] = None,
) -> RequestSignature:
    """
    Builds the (timestamp, nonce, signature) triple for one token request.
    signature = HMAC_SHA256(secret, timestamp + nonce + merchant_id), lowercase hex.
    A fresh nonce is drawn unless one is passed explicitly.
    """
    sink = sink or log_sink
    timestamp = generate_timestamp(now)
    if nonce is None:
        nonce = generate_nonce(context.nonce_bytes)
    message = build_request_message(timestamp, nonce, context.merchant_id)
    signature = hmac_sha256_hex(context.secret_bytes(), message)

    sink("request_signed", {
        "timestamp": timestamp,
        "nonce": nonce,
        "merchant_id": context.merchant_id,
        "message": message,
        "signature": signature,
    })
    return RequestSignature(timestamp=timestamp, nonce=nonce, signature=signature, message=message)


# ----------------- response side -----------------
def js_number(value: float) -> str:
    """Number-to-string the way the token service renders JSON numbers (ECMAScript rules)."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "Infinity" if value > 0 else "-Infinity"
    if value == 0:
        return "0"
    sign = "-" if value < 0 else ""
    _, digit_tuple, exp = Decimal(repr(abs(value))).as_tuple()
    digits = list(digit_tuple)
    while len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exp += 1
    while len(digits) > 1 and digits[0] == 0:
        digits.pop(0)
    s = "".join(str(d) for d in digits)
    k = len(s)
    n = exp + k  # decimal point position

    if k <= n <= 21:
        return sign + s + "0" * (n - k)
    if 0 < n <= 21:
        return sign + s[:n] + "." + s[n:]
    if -6 < n <= 0:
        return sign + "0." + "0" * (-n) + s
    e = n - 1
    mantissa = s if k == 1 else s[0] + "." + s[1:]
    return f"{sign}{mantissa}e{'+' if e >= 0 else '-'}{abs(e)}"


def canonical_request_id(value: Any) -> str:
    """
    Renders TOKEN_REQID exactly as it appears in the JSON payload.
    123 -> "123", 123.0 -> "123", 1e-07 -> "1e-7", "123" -> "123".
    """
    if isinstance(value, bool) or value is None:
        raise TypeError(f"unsupported request id: {value!r}")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return js_number(value)
    if isinstance(value, str):
        return value
    raise TypeError(f"unsupported request id: {value!r}")


def trim_response_body(raw: Union[bytes, str], encoding: str = "latin-1") -> str:
    # the remote appends a newline after signing; only trailing whitespace goes
    if isinstance(raw, bytes):
        raw = raw.decode(encoding)
    return raw.rstrip(TRAILING_WHITESPACE)


def build_response_message(server_timestamp: str, token_request_id: str, body: str) -> str:
    return f"{server_timestamp}{token_request_id}{body}"


def verify_response(
    context: SigningContext,
    received_signature: str,
    server_timestamp: str,
    token_request_id: Any,
    raw_response_body: Union[bytes, str],
    *,
    sink: Optional[DiagnosticSink] = None,
) -> VerificationOutcome:
    """
    Recomputes HMAC_SHA256(secret, timestamp + reqid + trimmed body) and compares it
    case-insensitively with the X-SIGNATURE value. A mismatch is an outcome, not an error.
    """
    sink = sink or log_sink
    request_id = canonical_request_id(token_request_id)
    body = trim_response_body(raw_response_body, context.response_encoding)
    message = build_response_message(server_timestamp, request_id, body)
    expected = hmac_sha256_hex(context.secret_bytes(), message, context.response_encoding).upper()
    received = received_signature or ""
    is_valid = signatures_match(expected, received)

    sink("response_verified", {
        "server_timestamp": server_timestamp,
        "token_request_id": request_id,
        "expected_signature": expected,
        "received_signature": received.upper(),
        "valid": is_valid,
    })
    return VerificationOutcome(
        is_valid=is_valid,
        expected_signature=expected,
        received_signature=received,
        server_timestamp=server_timestamp,
        token_request_id=request_id,
    )


def _header(headers: Mapping[str, str], name: str) -> str:
    # httpx.Headers is case-insensitive already; plain dicts are not
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return (value or "").strip()


def verify_token_response(
    context: SigningContext,
    headers: Mapping[str, str],
    raw_body: Union[bytes, str],
    payload: Mapping[str, Any],
    *,
    sink: Optional[DiagnosticSink] = None,
) -> Optional[VerificationOutcome]:
    """
    Returns None when the response cannot be authenticated at all (missing X-SIGNATURE,
    X-TIMESTAMP or TOKEN_REQID): the payload is then unverified, which is not the same
    as a failed verification.
    """
    signature = _header(headers, SIGNATURE_HEADER)
    timestamp = _header(headers, TIMESTAMP_HEADER)
    request_id = payload.get(REQUEST_ID_FIELD) if isinstance(payload, Mapping) else None

    if not signature or not timestamp or request_id in (None, ""):
        logger.warning("Response missing signature headers - skipping verification")
        return None
    try:
        canonical = canonical_request_id(request_id)
    except TypeError:
        logger.warning(f"Unusable {REQUEST_ID_FIELD} {request_id!r} - skipping verification")
        return None
    try:
        (timestamp + canonical).encode(context.response_encoding)
    except UnicodeEncodeError:
        logger.warning(f"{TIMESTAMP_HEADER} or {REQUEST_ID_FIELD} not representable in {context.response_encoding} - skipping verification")
        return None

    return verify_response(context, signature, timestamp, request_id, raw_body, sink=sink)
