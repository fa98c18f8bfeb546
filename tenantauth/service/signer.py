from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any

from tenantauth.config import Settings
from tenantauth.logging import get_logger
from tenantauth.service.errors import TokenExpiredError, TokenInvalidSignatureError

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class CredentialSigner:
    """HS256 JWT signing plus opaque random strings for refresh tokens.

    Stateless apart from the key material it was constructed with.
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock_skew: timedelta = timedelta(0),
    ) -> None:
        self._key = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.clock_skew = clock_skew

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialSigner":
        return cls(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock_skew=timedelta(seconds=settings.clock_skew_seconds),
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _signature(self, signing_input: str) -> str:
        digest = hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def sign(self, claims: dict[str, Any], expires_at: datetime) -> str:
        payload = {
            **claims,
            "iss": self.issuer,
            "aud": self.audience,
            "exp": int(expires_at.timestamp()),
        }
        header_enc = self._encode_segment(
            json.dumps(_HEADER, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(signing_input)}"

    def verify(self, token: str) -> dict[str, Any]:
        """Return the claims of a token this signer issued.

        Raises TokenInvalidSignatureError for anything malformed, forged or
        addressed elsewhere, and TokenExpiredError only once the signature
        has checked out.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise TokenInvalidSignatureError("malformed token") from None

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalidSignatureError("malformed token") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalidSignatureError("unsupported token algorithm")

        expected_sig = self._signature(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidSignatureError("token signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalidSignatureError("malformed token") from None
        if not isinstance(payload, dict):
            raise TokenInvalidSignatureError("malformed token")

        if payload.get("iss") != self.issuer:
            raise TokenInvalidSignatureError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalidSignatureError("token audience mismatch")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalidSignatureError("token has no valid expiry") from None
        if exp_ts <= self._now().timestamp() - self.clock_skew.total_seconds():
            raise TokenExpiredError(
                "access token expired",
                detail={
                    "expired_at": datetime.fromtimestamp(exp_ts, timezone.utc).isoformat()
                },
            )
        return payload

    def generate_opaque(self, nbytes: int = 64) -> str:
        """Unguessable URL-safe string suitable as a bearer secret."""
        return secrets.token_urlsafe(nbytes)
