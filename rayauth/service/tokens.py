from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from rayauth.config import Settings
from rayauth.logging import get_logger
from rayauth.storage.models import User

logger = get_logger(__name__)

REFRESH_TOKEN_TYPE = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "bearer"


def hash_token(raw: str) -> str:
    """SHA-256 hex digest used wherever a token is persisted."""
    return hashlib.sha256(raw.encode()).hexdigest()


class TokenIssuer:
    """HS256 signer for access and refresh tokens.

    Access and refresh tokens use independent secrets and lifetimes; refresh
    tokens additionally carry ``type: refresh`` so one kind can never stand
    in for the other.
    """

    def __init__(self, settings: Settings) -> None:
        if not settings.jwt_secret or not settings.jwt_refresh_secret:
            raise RuntimeError("JWT signing secrets are not configured")
        self._access_secret = settings.jwt_secret.encode()
        self._refresh_secret = settings.jwt_refresh_secret.encode()
        self.access_ttl = settings.access_token_ttl_seconds
        self.refresh_ttl = settings.refresh_token_ttl_seconds

    @staticmethod
    def claims_for(user: User) -> dict[str, Any]:
        return {
            "sub": user.id,
            "email": user.email,
            "role": user.role,
            "tenantId": user.tenant_id,
        }

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, secret: bytes) -> str:
        return self._encode_segment(
            hmac.new(secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any], secret: bytes) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, secret)}"

    def _decode_jwt(self, token: str, secret: bytes) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Reject anything but HS256 to rule out algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", secret)
        if not hmac.compare_digest(expected_sig, sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict) or not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def issue(self, user: User) -> TokenPair:
        now = int(time.time())
        claims = self.claims_for(user)
        access = self._encode_jwt(
            {**claims, "iat": now, "exp": now + self.access_ttl}, self._access_secret
        )
        refresh = self._encode_jwt(
            {
                **claims,
                "type": REFRESH_TOKEN_TYPE,
                "jti": uuid.uuid4().hex,
                "iat": now,
                "exp": now + self.refresh_ttl,
            },
            self._refresh_secret,
        )
        return TokenPair(access_token=access, refresh_token=refresh, expires_in=self.access_ttl)

    def verify_access(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token, self._access_secret)
        if payload is None or payload.get("type") == REFRESH_TOKEN_TYPE:
            return None
        return payload

    def verify_refresh(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token, self._refresh_secret)
        if payload is None or payload.get("type") != REFRESH_TOKEN_TYPE:
            return None
        return payload
