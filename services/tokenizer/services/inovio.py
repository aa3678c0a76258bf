# services/tokenizer/services/inovio.py
from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from loguru import logger

from ..config import Settings, settings as default_settings
from ..utils.hmac_sign import mask_pan, parse_timestamp
from .signature import (
    TIMESTAMP_HEADER,
    DiagnosticSink,
    RequestSignature,
    SigningContext,
    sign_request,
)


class TokenServiceError(RuntimeError):
    """Non-2xx answer from the token service; status and body are passed through unchanged."""

    def __init__(self, status: int, body: Any):
        super().__init__(f"Token service {status}: {body}")
        self.status = status
        self.body = body


class TokenServiceTransportError(RuntimeError):
    """Timeout or connection failure; the caller may retry."""


class TokenServiceResponseError(RuntimeError):
    """2xx answer whose body is not a JSON object."""

    def __init__(self, message: str, raw: str):
        super().__init__(message)
        self.raw = raw


class TokenServiceResponse:
    def __init__(self, *, status_code: int, headers: httpx.Headers, raw_body: bytes,
                 text: str, payload: Dict[str, Any], request_signature: RequestSignature):
        self.status_code = status_code
        self.headers = headers
        self.raw_body = raw_body
        self.text = text
        self.payload = payload
        self.request_signature = request_signature


class InovioTokenClient:
    """
    Client for the Inovio ArgusPay token service:
    - GET TOKEN_SERVICE_URL?CARD_PAN=...&REQUEST_API_VERSION=...&UNIQUE_ID=...&SITE_ID=...&REQUEST_RESPONSE_FORMAT=JSON
    - X-SIGNATURE / X-TIMESTAMP travel as headers, never as query params.
    - The body is ISO-8859-1, so it is read as bytes and decoded explicitly.
    """

    def __init__(self, context: SigningContext, settings: Optional[Settings] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 sink: Optional[DiagnosticSink] = None) -> None:
        self.context = context
        self.settings = settings or default_settings
        self.url = self.settings.TOKEN_SERVICE_URL
        self.api_version = self.settings.API_VERSION
        self.timeout = self.settings.TOKEN_SERVICE_TIMEOUT
        self.max_retries = max(0, self.settings.TOKEN_SERVICE_MAX_RETRIES)
        self.backoff = self.settings.TOKEN_SERVICE_RETRY_BACKOFF
        self.tolerance = self.settings.TIMESTAMP_TOLERANCE
        self.transport = transport
        self.sink = sink

    # ----------------- helpers -----------------
    def _params(self, card_pan: str, signature: RequestSignature) -> Dict[str, str]:
        return {
            "CARD_PAN": card_pan,
            "REQUEST_API_VERSION": self.api_version,
            "UNIQUE_ID": signature.nonce,
            "SITE_ID": self.context.merchant_id,
            "REQUEST_RESPONSE_FORMAT": "JSON",
        }

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self.context.response_encoding)

    def _error_body(self, raw: bytes) -> Any:
        text = self._decode(raw)
        try:
            return json.loads(text)
        except ValueError:
            return text

    def _check_clock_skew(self, server_timestamp: Optional[str]) -> None:
        if not server_timestamp:
            return
        try:
            server_time = parse_timestamp(server_timestamp.strip())
        except ValueError:
            logger.warning(f"Unparseable {TIMESTAMP_HEADER}: {server_timestamp!r}")
            return
        skew = abs((datetime.now(timezone.utc) - server_time).total_seconds())
        if skew > self.tolerance:
            logger.warning(f"Clock skew of {skew:.0f}s with token service exceeds tolerance of {self.tolerance}s")

    async def _get_once(self, client: httpx.AsyncClient, card_pan: str) -> TokenServiceResponse:
        # fresh timestamp and nonce for every attempt
        signature = sign_request(self.context, sink=self.sink)
        logger.info(f"Token request for card {mask_pan(card_pan)} (UNIQUE_ID={signature.nonce})")
        try:
            r = await client.get(self.url, params=self._params(card_pan, signature), headers=signature.headers())
        except httpx.TimeoutException as e:
            raise TokenServiceTransportError(f"Token service timeout: {e}") from e
        except httpx.TransportError as e:
            raise TokenServiceTransportError(f"Token service unreachable: {e}") from e

        raw = r.content
        if not r.is_success:
            body = self._error_body(raw)
            logger.error(f"Token service error: {r.status_code} {body}")
            raise TokenServiceError(r.status_code, body)

        text = self._decode(raw)
        logger.debug(f"Token service response {r.status_code}: headers={dict(r.headers)} body={text!r}")
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise TokenServiceResponseError(f"Token service returned non-JSON body: {e}", text) from e
        if not isinstance(payload, dict):
            raise TokenServiceResponseError("Token service returned a non-object JSON body", text)

        self._check_clock_skew(r.headers.get(TIMESTAMP_HEADER))
        return TokenServiceResponse(
            status_code=r.status_code,
            headers=r.headers,
            raw_body=raw,
            text=text,
            payload=payload,
            request_signature=signature,
        )

    # ----------------- API -----------------
    async def request_token(self, card_pan: str) -> TokenServiceResponse:
        """
        Tokenizes one PAN. Retries (if enabled) only on transport errors and 5xx,
        with exponential backoff; 4xx and bad bodies are returned to the caller at once.
        """
        attempt = 0
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            while True:
                try:
                    return await self._get_once(client, card_pan)
                except TokenServiceError as e:
                    if e.status < 500 or attempt >= self.max_retries:
                        raise
                    last = f"HTTP {e.status}"
                except TokenServiceTransportError as e:
                    if attempt >= self.max_retries:
                        raise
                    last = str(e)
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                logger.warning(f"Token service attempt {attempt} failed ({last}); retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
