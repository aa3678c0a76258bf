"""
Pytest fixtures: signing context, a stub Inovio token service built on
httpx.MockTransport, and a FastAPI TestClient wired to it.
"""

from typing import List

import pytest
from fastapi.testclient import TestClient

from services.tokenizer.config import Settings
from services.tokenizer.main import app
from services.tokenizer.routers import tokens
from services.tokenizer.services.inovio import InovioTokenClient
from services.tokenizer.services.signature import SigningContext
from stub_service import SECRET, SITE_ID, TOKEN_URL, TokenServiceStub


@pytest.fixture
def context() -> SigningContext:
    return SigningContext(secret_key=SECRET, merchant_id=SITE_ID)


@pytest.fixture
def test_settings() -> Settings:
    cfg = Settings()
    cfg.SECRET_KEY = SECRET
    cfg.SITE_ID = SITE_ID
    cfg.TOKEN_SERVICE_URL = TOKEN_URL
    cfg.API_VERSION = "2.22"
    cfg.TOKEN_SERVICE_MAX_RETRIES = 0
    cfg.TOKEN_SERVICE_RETRY_BACKOFF = 0.0
    cfg.TIMESTAMP_TOLERANCE = 300
    return cfg


@pytest.fixture
def diagnostics() -> List[tuple]:
    return []


@pytest.fixture
def make_client(context, test_settings, diagnostics):
    def _make(stub: TokenServiceStub, **overrides) -> InovioTokenClient:
        for key, value in overrides.items():
            setattr(test_settings, key, value)
        return InovioTokenClient(
            context, test_settings, transport=stub.transport,
            sink=lambda event, fields: diagnostics.append((event, fields)),
        )
    return _make


@pytest.fixture
def api(make_client, test_settings):
    """Returns a factory: api(stub) -> TestClient talking to that stub."""
    def _api(stub: TokenServiceStub, **overrides) -> TestClient:
        client = make_client(stub, **overrides)
        app.dependency_overrides[tokens.get_settings] = lambda: test_settings
        app.dependency_overrides[tokens.get_token_client] = lambda: client
        return TestClient(app)

    yield _api
    app.dependency_overrides.clear()
