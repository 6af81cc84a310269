from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from rxportal.config import Settings
from rxportal.logging import get_logger

logger = get_logger(__name__)

MIN_SECRET_LENGTH = 32


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class TokenError(Exception):
    """Base class for token verification failures."""


class InvalidTokenSignature(TokenError):
    """Malformed token, bad signature, or claims that do not match this issuer."""


class TokenExpired(TokenError):
    """Signature is valid but ``exp`` is in the past."""


class TokenService:
    """Mint and verify HS256 access and refresh tokens.

    Access and refresh tokens are signed with different secrets so a leak of
    one cannot be used to forge the other. Instances hold only immutable
    configuration and are safe to share across requests and threads.
    """

    def __init__(self, settings: Settings) -> None:
        access_secret = settings.jwt_access_secret or ""
        refresh_secret = settings.jwt_refresh_secret or ""
        for name, secret in (
            ("JWT_ACCESS_SECRET", access_secret),
            ("JWT_REFRESH_SECRET", refresh_secret),
        ):
            if len(secret) < MIN_SECRET_LENGTH:
                raise RuntimeError(
                    f"{name} must be at least {MIN_SECRET_LENGTH} characters"
                )
        if hmac.compare_digest(access_secret, refresh_secret):
            raise RuntimeError("JWT_ACCESS_SECRET and JWT_REFRESH_SECRET must differ")
        self._secrets = {
            TokenKind.ACCESS: access_secret.encode(),
            TokenKind.REFRESH: refresh_secret.encode(),
        }
        self._ttl_seconds = {
            TokenKind.ACCESS: settings.access_token_ttl_minutes * 60,
            TokenKind.REFRESH: settings.refresh_token_ttl_minutes * 60,
        }
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.leeway_seconds = settings.jwt_clock_skew_seconds

    def ttl_seconds(self, kind: TokenKind) -> int:
        return self._ttl_seconds[kind]

    def sign_access_token(self, user_id: str, email: str, role: str) -> str:
        return self._sign(TokenKind.ACCESS, {"sub": user_id, "email": email, "role": role})

    def sign_refresh_token(self, user_id: str, token_record_id: str) -> str:
        return self._sign(TokenKind.REFRESH, {"sub": user_id, "tid": token_record_id})

    def verify(self, token: str, kind: TokenKind) -> Dict[str, Any]:
        """Return the claims of ``token`` or raise a TokenError subclass."""

        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenSignature("malformed token")
        if not token.isascii():
            raise InvalidTokenSignature("malformed token")

        # Pin the algorithm to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            raise InvalidTokenSignature("malformed header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", kind=kind.value)
            raise InvalidTokenSignature("unsupported algorithm")

        expected_sig = self._signature(kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenSignature("signature mismatch")

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError:
            raise InvalidTokenSignature("malformed payload")
        if not isinstance(payload, dict):
            raise InvalidTokenSignature("malformed payload")
        if payload.get("typ") != kind.value:
            raise InvalidTokenSignature("wrong token kind")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidTokenSignature("issuer or audience mismatch")
        if not payload.get("sub"):
            raise InvalidTokenSignature("missing subject")

        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenSignature("missing expiry")
        if exp_ts <= time.time() - self.leeway_seconds:
            raise TokenExpired("token expired")
        return payload

    def _sign(self, kind: TokenKind, claims: Dict[str, Any], now: Optional[float] = None) -> str:
        issued_at = int(now if now is not None else time.time())
        payload = {
            **claims,
            "typ": kind.value,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": issued_at,
            "exp": issued_at + self._ttl_seconds[kind],
            # Unique per token so two mints in the same second still differ
            "jti": uuid.uuid4().hex,
        }
        header_enc = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._signature(kind, signing_input)}"

    def _signature(self, kind: TokenKind, signing_input: str) -> str:
        digest = hmac.new(
            self._secrets[kind], signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        try:
            return base64.urlsafe_b64decode(segment + padding)
        except (ValueError, TypeError) as exc:
            raise ValueError("invalid base64 segment") from exc
