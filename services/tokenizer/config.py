# services/tokenizer/config.py
import os
from functools import cached_property

from dotenv import load_dotenv

from .services.signature import SigningContext

load_dotenv()


def _split_env(name: str, default: str = "*") -> list[str]:
    """
    Returns a list from a comma separated env var.
    Example: "https://a.example,https://b.example" -> ["https://a.example","https://b.example"]
    """
    val = os.getenv(name, default)
    # a single "*" means open CORS
    if val.strip() == "*":
        return ["*"]
    return [s.strip() for s in val.split(",") if s.strip()]


class Settings:
    # App/infra
    ENV = os.getenv("ENV", "production")
    PORT = int(os.getenv("PORT", "3000"))
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    # CORS
    ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")

    # Inovio token service
    SECRET_KEY = os.getenv("SECRET_KEY", "Password123")
    SITE_ID = os.getenv("SITE_ID", "9201")
    TOKEN_SERVICE_URL = os.getenv("TOKEN_SERVICE_URL", "https://t1api.inoviopay.com/payment/token_service.cfm")
    API_VERSION = os.getenv("API_VERSION", "2.22")
    TIMESTAMP_TOLERANCE = int(os.getenv("TIMESTAMP_TOLERANCE", "300"))  # seconds

    # Protocol constants pinned to what the remote service expects
    NONCE_BYTES = int(os.getenv("NONCE_BYTES", "16"))  # 16 -> 32 hex chars
    RESPONSE_ENCODING = os.getenv("RESPONSE_ENCODING", "latin-1")

    # Outbound HTTP
    TOKEN_SERVICE_TIMEOUT = float(os.getenv("TOKEN_SERVICE_TIMEOUT", "30"))
    TOKEN_SERVICE_MAX_RETRIES = int(os.getenv("TOKEN_SERVICE_MAX_RETRIES", "0"))
    TOKEN_SERVICE_RETRY_BACKOFF = float(os.getenv("TOKEN_SERVICE_RETRY_BACKOFF", "0.5"))

    @property
    def cors_origins(self) -> list[str]:
        return _split_env("ALLOWED_ORIGINS", self.ALLOWED_ORIGINS)

    @cached_property
    def signing_context(self) -> SigningContext:
        # built once per Settings; immutable afterwards
        return SigningContext(
            secret_key=self.SECRET_KEY,
            merchant_id=self.SITE_ID,
            nonce_bytes=self.NONCE_BYTES,
            response_encoding=self.RESPONSE_ENCODING,
        )


settings = Settings()
