from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from eventflow_auth.config import Settings
from eventflow_auth.logging import get_logger
from eventflow_auth.storage.models import RefreshToken, utcnow

logger = get_logger(__name__)


@dataclass(frozen=True)
class AccessToken:
    value: str
    jti: str
    issued_at: datetime
    expires_at: datetime


class TokenIssuer:
    """Mints HS256 access tokens and opaque refresh tokens.

    Access tokens are self-describing and verified without store access;
    refresh tokens are random values whose state lives in the store.
    """

    def __init__(
        self,
        *,
        secret: str,
        issuer: str,
        audience: str,
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
        leeway_seconds: int = 0,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl_days = refresh_ttl_days
        self._clock = clock
        self._leeway_seconds = leeway_seconds

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "TokenIssuer":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl_days=settings.refresh_token_ttl_days,
            **kwargs,
        )

    def now(self) -> datetime:
        return self._clock()

    def generate_access_token(
        self,
        user_id: str,
        email: str,
        role: str,
        first_name: str = "",
        last_name: str = "",
    ) -> AccessToken:
        issued_at = self._clock().replace(microsecond=0)
        expires_at = issued_at + self.access_ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "email": email,
            "role": role,
            "first_name": first_name,
            "last_name": last_name,
            "token_type": "access",
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return AccessToken(
            value=self._encode_jwt(payload),
            jti=jti,
            issued_at=issued_at,
            # Reported expiry is read back from the signed claim
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )

    def generate_refresh_token(self, user_id: str) -> RefreshToken:
        return RefreshToken.new(user_id, ttl_days=self.refresh_ttl_days)

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        return payload

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return None

        # Only HS256 is accepted; rejects "none" and algorithm swaps
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock().timestamp() - self._leeway_seconds:
            return None
        return payload
