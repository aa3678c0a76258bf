# services/tokenizer/routers/tokens.py
from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from loguru import logger

from ..config import Settings, settings
from ..schemas import (
    ErrorResponse,
    GenerateTokenRequest,
    HealthConfig,
    HealthResponse,
    SignatureFailure,
    TokenResponse,
)
from ..services.inovio import (
    InovioTokenClient,
    TokenServiceError,
    TokenServiceResponseError,
    TokenServiceTransportError,
)
from ..services.signature import SigningContext, verify_token_response
from ..utils.hmac_sign import mask_pan

PAN_RE = re.compile(r"^\d{12,19}$")
UNVERIFIED_WARNING = "Response missing signature headers - signature not verified"

# ---------------------------
# Dependencies (overridable in tests)
# ---------------------------
def get_settings() -> Settings:
    return settings


def get_signing_context(cfg: Settings = Depends(get_settings)) -> SigningContext:
    return cfg.signing_context


def get_token_client(
    cfg: Settings = Depends(get_settings),
    context: SigningContext = Depends(get_signing_context),
) -> InovioTokenClient:
    return InovioTokenClient(context, cfg)


def _error(status_code: int, error: str, message: Optional[str] = None, details=None) -> JSONResponse:
    body = ErrorResponse(error=error, message=message, details=details)
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


def normalize_pan(card_pan: str) -> Optional[str]:
    pan = re.sub(r"[\s-]", "", card_pan)
    return pan if PAN_RE.match(pan) else None


# ---------------------------
# Router
# ---------------------------
router = APIRouter(tags=["tokens"])


@router.get("/health", response_model=HealthResponse)
async def health(cfg: Settings = Depends(get_settings)):
    return HealthResponse(
        timestamp=datetime.now(timezone.utc).isoformat(),
        config=HealthConfig(
            siteId=cfg.SITE_ID,
            apiVersion=cfg.API_VERSION,
            tokenServiceUrl=cfg.TOKEN_SERVICE_URL,
        ),
    )


@router.post("/api/generate-token")
async def generate_token(
    body: GenerateTokenRequest,
    client: InovioTokenClient = Depends(get_token_client),
):
    """
    Tokenizes a card PAN through the Inovio token service:
    - signs the request (timestamp + nonce + site id),
    - verifies X-SIGNATURE on the response (timestamp + TOKEN_REQID + body),
    - returns the token payload, or both signatures when they disagree.
    """
    if not body.cardPan:
        return _error(400, "Missing required field: cardPan")
    pan = normalize_pan(body.cardPan)
    if pan is None:
        return _error(400, "Invalid card PAN", "cardPan must contain 12 to 19 digits")

    try:
        resp = await client.request_token(pan)
    except TokenServiceError as e:
        return _error(e.status, "Token service error", details=e.body)
    except TokenServiceTransportError as e:
        logger.error(f"Token service unavailable for card {mask_pan(pan)}: {e}")
        return _error(500, "Token service unavailable", str(e))
    except TokenServiceResponseError as e:
        logger.error(f"Malformed token service response: {e}")
        return _error(500, "Malformed token service response", str(e), details=e.raw)
    except Exception as e:
        logger.exception("Unexpected error while generating token")
        return _error(500, "Internal server error", str(e))

    try:
        outcome = verify_token_response(client.context, resp.headers, resp.raw_body, resp.payload, sink=client.sink)
    except Exception as e:
        logger.exception("Unexpected error while verifying token service response")
        return _error(500, "Internal server error", str(e))

    if outcome is None:
        unverified = TokenResponse(signatureVerified=False, token=resp.payload, warning=UNVERIFIED_WARNING)
        return JSONResponse(status_code=200, content=unverified.model_dump())

    if not outcome.is_valid:
        logger.error("Response signature verification FAILED")
        failure = SignatureFailure(
            receivedSignature=outcome.received_signature,
            expectedSignature=outcome.expected_signature,
            serverTimestamp=outcome.server_timestamp,
            tokenRequestId=outcome.token_request_id,
            responseData=resp.payload,
        )
        return JSONResponse(status_code=200, content=failure.model_dump())

    logger.info("Response signature verified successfully")
    verified = TokenResponse(signatureVerified=True, token=resp.payload)
    return JSONResponse(status_code=200, content=verified.model_dump(exclude_none=True))
