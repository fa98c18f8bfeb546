"""Tests for the HS256 credential signer."""

import base64
import json
from datetime import datetime, timedelta, timezone

import pytest

from tenantauth.config import Settings
from tenantauth.service.errors import TokenExpiredError, TokenInvalidSignatureError
from tenantauth.service.signer import CredentialSigner

SECRET = "signer-test-secret-with-at-least-32-chars"


@pytest.fixture
def signer():
    return CredentialSigner(SECRET, issuer="tenantauth", audience="clients")


def _future(minutes=5):
    return datetime.now(timezone.utc) + timedelta(minutes=minutes)


def _b64(obj) -> str:
    raw = json.dumps(obj, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


class TestSignAndVerify:
    def test_round_trip_returns_claims_with_registered_fields(self, signer):
        token = signer.sign({"sub": "user-1", "role": "none"}, _future())
        claims = signer.verify(token)

        assert claims["sub"] == "user-1"
        assert claims["role"] == "none"
        assert claims["iss"] == "tenantauth"
        assert claims["aud"] == "clients"
        assert isinstance(claims["exp"], int)

    def test_token_has_three_segments_and_hs256_header(self, signer):
        token = signer.sign({"sub": "u"}, _future())
        header_b64, _, _ = token.split(".")
        header = json.loads(CredentialSigner._decode_segment(header_b64))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_from_settings_uses_configured_issuer_and_audience(self):
        settings = Settings(jwt_secret=SECRET, jwt_issuer="iss-x", jwt_audience="aud-y")
        signer = CredentialSigner.from_settings(settings)
        claims = signer.verify(signer.sign({"sub": "u"}, _future()))
        assert claims["iss"] == "iss-x"
        assert claims["aud"] == "aud-y"


class TestRejection:
    def test_tampered_payload_is_invalid(self, signer):
        token = signer.sign({"sub": "user-1", "role": "none"}, _future())
        header, _, sig = token.split(".")
        forged = _b64({"sub": "user-1", "role": "admin", "iss": "tenantauth",
                       "aud": "clients", "exp": int(_future().timestamp())})
        with pytest.raises(TokenInvalidSignatureError):
            signer.verify(f"{header}.{forged}.{sig}")

    def test_other_secret_is_invalid(self, signer):
        other = CredentialSigner("x" * 40, issuer="tenantauth", audience="clients")
        with pytest.raises(TokenInvalidSignatureError):
            signer.verify(other.sign({"sub": "u"}, _future()))

    def test_alg_none_is_rejected(self, signer):
        header = _b64({"alg": "none", "typ": "JWT"})
        payload = _b64({"sub": "u", "iss": "tenantauth", "aud": "clients",
                        "exp": int(_future().timestamp())})
        with pytest.raises(TokenInvalidSignatureError):
            signer.verify(f"{header}.{payload}.")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.%%"])
    def test_malformed_tokens_are_invalid(self, signer, token):
        with pytest.raises(TokenInvalidSignatureError):
            signer.verify(token)

    def test_wrong_audience_is_invalid(self, signer):
        other = CredentialSigner(SECRET, issuer="tenantauth", audience="someone-else")
        with pytest.raises(TokenInvalidSignatureError):
            signer.verify(other.sign({"sub": "u"}, _future()))

    def test_wrong_issuer_is_invalid(self, signer):
        other = CredentialSigner(SECRET, issuer="elsewhere", audience="clients")
        with pytest.raises(TokenInvalidSignatureError):
            signer.verify(other.sign({"sub": "u"}, _future()))


class TestExpiry:
    def test_expired_token_raises_expired_not_invalid(self, signer):
        token = signer.sign({"sub": "u"}, datetime.now(timezone.utc) - timedelta(seconds=5))
        with pytest.raises(TokenExpiredError) as excinfo:
            signer.verify(token)
        assert "expired_at" in excinfo.value.detail
        assert excinfo.value.error_code == "token_expired"

    def test_expired_and_forged_reports_invalid_signature(self, signer):
        other = CredentialSigner("y" * 40, issuer="tenantauth", audience="clients")
        token = other.sign({"sub": "u"}, datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(TokenInvalidSignatureError):
            signer.verify(token)

    def test_clock_skew_tolerates_recent_expiry(self):
        lenient = CredentialSigner(
            SECRET, issuer="tenantauth", audience="clients", clock_skew=timedelta(seconds=60)
        )
        token = lenient.sign({"sub": "u"}, datetime.now(timezone.utc) - timedelta(seconds=10))
        assert lenient.verify(token)["sub"] == "u"


class TestOpaqueStrings:
    def test_generate_opaque_is_unique_and_url_safe(self, signer):
        values = {signer.generate_opaque() for _ in range(50)}
        assert len(values) == 50
        for value in values:
            assert len(value) >= 64
            assert all(c.isalnum() or c in "-_" for c in value)
