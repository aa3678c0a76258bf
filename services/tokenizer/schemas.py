from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class GenerateTokenRequest(BaseModel):
    cardPan: Optional[str] = Field(None, examples=["5120342233150747"])


class TokenResponse(BaseModel):
    success: bool = True
    signatureVerified: bool
    token: Dict[str, Any]
    warning: Optional[str] = None


class SignatureFailure(BaseModel):
    success: bool = False
    error: str = "Response signature verification failed"
    signatureVerified: bool = False
    receivedSignature: str
    expectedSignature: str
    serverTimestamp: str
    tokenRequestId: str
    responseData: Dict[str, Any]


class ErrorResponse(BaseModel):
    error: str
    message: Optional[str] = None
    details: Optional[Any] = None


class HealthConfig(BaseModel):
    siteId: str
    apiVersion: str
    tokenServiceUrl: str


class HealthResponse(BaseModel):
    status: str = "healthy"
    timestamp: str
    config: HealthConfig
