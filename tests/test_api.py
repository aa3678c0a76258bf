"""
End-to-end tests for the HTTP API against the stub token service.
"""

import json

import httpx

from services.tokenizer.config import Settings
from services.tokenizer.main import app
from services.tokenizer.routers import tokens
from services.tokenizer.services.inovio import InovioTokenClient
from stub_service import SECRET, TOKEN_PAYLOAD, TokenServiceStub

PAN = "409159111111111"


def _ascii_signed(payload):
    # JSON escapes keep the body ASCII while the parsed request id is not latin-1
    body = json.dumps(payload, ensure_ascii=True, separators=(",", ":")).encode("ascii")
    headers = {"X-SIGNATURE": "AB" * 32, "X-TIMESTAMP": "20251103170000"}
    return httpx.Response(200, content=body + b"\n", headers=headers)


class TestGenerateToken:
    def test_verified_token(self, api):
        r = api(TokenServiceStub()).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 200
        data = r.json()
        assert data["success"] is True
        assert data["signatureVerified"] is True
        assert data["token"]["TOKEN_GUID"] == TOKEN_PAYLOAD["TOKEN_GUID"]
        assert data["token"]["BANK_COUNTRY"] == "España"
        assert "warning" not in data

    def test_corrupted_signature(self, api):
        r = api(TokenServiceStub(corrupt=True)).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 200
        data = r.json()
        assert data["success"] is False
        assert data["signatureVerified"] is False
        assert data["error"] == "Response signature verification failed"
        assert data["receivedSignature"].upper() != data["expectedSignature"]
        assert data["tokenRequestId"] == str(TOKEN_PAYLOAD["TOKEN_REQID"])
        assert data["responseData"]["TOKEN_GUID"] == TOKEN_PAYLOAD["TOKEN_GUID"]
        assert len(data["serverTimestamp"]) == 14

    def test_wrong_shared_secret(self, api):
        r = api(TokenServiceStub(secret="not-the-secret")).post("/api/generate-token", json={"cardPan": PAN})
        assert r.json()["signatureVerified"] is False

    def test_unsigned_response_is_unverified(self, api):
        r = api(TokenServiceStub(signed=False)).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 200
        data = r.json()
        assert data["success"] is True
        assert data["signatureVerified"] is False
        assert "not verified" in data["warning"]
        assert data["token"]["TOKEN_GUID"] == TOKEN_PAYLOAD["TOKEN_GUID"]

    def test_missing_request_id_is_unverified(self, api):
        payload = {k: v for k, v in TOKEN_PAYLOAD.items() if k != "TOKEN_REQID"}
        r = api(TokenServiceStub(payload=payload)).post("/api/generate-token", json={"cardPan": PAN})
        assert r.json()["signatureVerified"] is False
        assert r.json()["success"] is True

    def test_pan_is_normalized(self, api):
        stub = TokenServiceStub()
        api(stub).post("/api/generate-token", json={"cardPan": "4091 5911-1111 111"})
        assert stub.requests[0].url.params["CARD_PAN"] == PAN


class TestValidation:
    def test_missing_card_pan(self, api):
        stub = TokenServiceStub()
        r = api(stub).post("/api/generate-token", json={})
        assert r.status_code == 400
        assert r.json() == {"error": "Missing required field: cardPan"}
        assert stub.requests == []

    def test_empty_card_pan(self, api):
        r = api(TokenServiceStub()).post("/api/generate-token", json={"cardPan": ""})
        assert r.status_code == 400

    def test_invalid_card_pan(self, api):
        r = api(TokenServiceStub()).post("/api/generate-token", json={"cardPan": "4091abc"})
        assert r.status_code == 400
        assert r.json()["error"] == "Invalid card PAN"

    def test_malformed_body(self, api):
        r = api(TokenServiceStub()).post(
            "/api/generate-token", content=b"not json", headers={"Content-Type": "application/json"},
        )
        assert r.status_code == 400


class TestUpstreamErrors:
    def test_upstream_status_is_passed_through(self, api):
        stub = TokenServiceStub(responses=[lambda request: httpx.Response(401, content=b'{"SERVICE_ADVICE":"Unauthorized"}')])
        r = api(stub).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 401
        assert r.json() == {"error": "Token service error", "details": {"SERVICE_ADVICE": "Unauthorized"}}

    def test_upstream_5xx_retried_then_ok(self, api):
        stub = TokenServiceStub(responses=[lambda request: httpx.Response(503, content=b"busy")])
        r = api(stub, TOKEN_SERVICE_MAX_RETRIES=1).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 200
        assert r.json()["signatureVerified"] is True

    def test_timeout(self, api):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        r = api(TokenServiceStub(responses=[timeout])).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 500
        assert r.json()["error"] == "Token service unavailable"

    def test_malformed_upstream_body(self, api):
        stub = TokenServiceStub(responses=[lambda request: httpx.Response(200, content=b"<html/>")])
        r = api(stub).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 500
        assert r.json()["error"] == "Malformed token service response"

    def test_redirect_is_passed_through(self, api):
        stub = TokenServiceStub(responses=[lambda request: httpx.Response(302, headers={"Location": "https://elsewhere.test/"}, content=b"moved")])
        r = api(stub).post("/api/generate-token", json={"cardPan": PAN}, follow_redirects=False)
        assert r.status_code == 302
        assert r.json() == {"error": "Token service error", "details": "moved"}

    def test_unexpected_client_failure_is_structured(self, api, context, test_settings):
        class BrokenClient(InovioTokenClient):
            async def request_token(self, card_pan):
                raise RuntimeError("kaboom")

        client = api(TokenServiceStub())
        app.dependency_overrides[tokens.get_token_client] = lambda: BrokenClient(context, test_settings)
        r = client.post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 500
        assert r.json() == {"error": "Internal server error", "message": "kaboom"}

    def test_unencodable_request_id_is_unverified(self, api):
        payload = dict(TOKEN_PAYLOAD, TOKEN_REQID="\u4e00")
        stub = TokenServiceStub(payload=payload, responses=[lambda request: _ascii_signed(payload)])
        r = api(stub).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 200
        assert r.headers["content-type"].startswith("application/json")
        data = r.json()
        assert data["success"] is True
        assert data["signatureVerified"] is False
        assert data["token"]["TOKEN_REQID"] == "\u4e00"

    def test_verification_crash_is_structured(self, api, monkeypatch):
        def explode(*args, **kwargs):
            raise UnicodeEncodeError("latin-1", "\u4e00", 0, 1, "ordinal not in range(256)")

        monkeypatch.setattr(tokens, "verify_token_response", explode)
        r = api(TokenServiceStub()).post("/api/generate-token", json={"cardPan": PAN})
        assert r.status_code == 500
        assert r.json()["error"] == "Internal server error"

    def test_secret_never_leaks(self, api):
        for stub in (TokenServiceStub(corrupt=True), TokenServiceStub(responses=[lambda request: httpx.Response(500, content=b"x")])):
            r = api(stub).post("/api/generate-token", json={"cardPan": PAN})
            assert SECRET not in r.text


class TestHealthAndForm:
    def test_health(self, api):
        r = api(TokenServiceStub()).get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["config"] == {
            "siteId": "9201",
            "apiVersion": "2.22",
            "tokenServiceUrl": "https://token.test/payment/token_service.cfm",
        }
        assert SECRET not in r.text

    def test_test_form(self, api):
        r = api(TokenServiceStub()).get("/")
        assert r.status_code == 200
        assert "/api/generate-token" in r.text


class TestSigningContextDependency:
    def test_context_follows_settings(self):
        first, second = Settings(), Settings()
        first.SITE_ID, second.SITE_ID = "1111", "2222"
        assert tokens.get_signing_context(first).merchant_id == "1111"
        assert tokens.get_signing_context(second).merchant_id == "2222"

    def test_context_is_built_once_per_settings(self):
        cfg = Settings()
        assert tokens.get_signing_context(cfg) is tokens.get_signing_context(cfg)
