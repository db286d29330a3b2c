from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol

from eventflow_auth.logging import get_logger
from eventflow_auth.service.errors import ServiceUnavailableError
from eventflow_auth.service.tokens import TokenIssuer
from eventflow_auth.storage.errors import CacheUnavailable

logger = get_logger(__name__)


class RevocationCache(Protocol):
    async def blacklist(self, jti: str, ttl_seconds: float) -> None: ...

    async def is_blacklisted(self, jti: str) -> bool: ...


@dataclass(frozen=True)
class TokenPrincipal:
    user_id: str
    email: str
    role: str
    jti: str
    expires_at: datetime
    first_name: str = ""
    last_name: str = ""


class AccessTokenValidator:
    """Validates bearer access tokens without touching the credential store."""

    def __init__(self, issuer: TokenIssuer, cache: Optional[RevocationCache] = None) -> None:
        self.issuer = issuer
        self.cache = cache

    @staticmethod
    def extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header.split(" ", 1)[1].strip()
        return token or None

    def _principal(self, payload: dict) -> TokenPrincipal:
        return TokenPrincipal(
            user_id=str(payload["sub"]),
            email=payload.get("email", ""),
            role=payload.get("role", ""),
            jti=str(payload["jti"]),
            expires_at=datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc),
            first_name=payload.get("first_name", ""),
            last_name=payload.get("last_name", ""),
        )

    async def validate(self, token: str) -> Optional[TokenPrincipal]:
        payload = self.issuer.decode_access_token(token)
        if not payload:
            return None
        principal = self._principal(payload)
        if self.cache is not None:
            try:
                if await self.cache.is_blacklisted(principal.jti):
                    return None
            except CacheUnavailable as exc:
                # Fail closed: an unreadable blacklist cannot vouch for the token
                logger.error("revocation_cache_unavailable", error=str(exc))
                raise ServiceUnavailableError("revocation cache unavailable") from exc
        return principal

    def remaining_lifetime(self, principal: TokenPrincipal) -> float:
        """Seconds until ``exp``; a blacklist entry never needs to outlive this."""
        remaining = (principal.expires_at - self.issuer.now()).total_seconds()
        return max(0.0, remaining)

    async def revoke_access_token(self, token: str) -> Optional[TokenPrincipal]:
        """Blacklist a still-valid access token until it would have expired.

        Returns the revoked principal, or ``None`` when the token was already
        invalid and nothing needed recording.
        """
        payload = self.issuer.decode_access_token(token)
        if not payload:
            return None
        principal = self._principal(payload)
        ttl = self.remaining_lifetime(principal)
        if self.cache is None or ttl <= 0:
            return principal
        try:
            await self.cache.blacklist(principal.jti, ttl)
        except CacheUnavailable as exc:
            logger.error("revocation_cache_unavailable", error=str(exc))
            raise ServiceUnavailableError("revocation cache unavailable") from exc
        logger.info("access_token_blacklisted", user_id=principal.user_id, ttl_seconds=ttl)
        return principal
