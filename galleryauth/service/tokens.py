from __future__ import annotations

import base64
import hashlib
import hmac
import json
import math
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from galleryauth.config import Settings
from galleryauth.logging import get_logger
from galleryauth.service.errors import TokenExpired, TokenInvalid, TokenRevoked
from galleryauth.storage.counters import (
    REVOKED_BEFORE_PREFIX,
    REVOKED_JTI_PREFIX,
    SharedCounterStore,
)
from galleryauth.storage.models import Principal, Role

logger = get_logger(__name__)

_REQUIRED_CLAIMS = ("sub", "email", "role", "type", "iat", "exp", "jti", "iss", "aud")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


@dataclass(frozen=True)
class Claims:
    sub: str
    email: str
    role: Role
    type: TokenType
    iat: float
    exp: float
    jti: str
    iss: str
    aud: str

    @property
    def lifetime_seconds(self) -> float:
        return self.exp - self.iat

    def remaining_seconds(self, now: float) -> int:
        return math.ceil(self.exp - now)


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


class TokenService:
    """Issue, verify, revoke and rotate HS256 access/refresh tokens."""

    def __init__(
        self,
        settings: Settings,
        counters: SharedCounterStore,
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.settings = settings
        self.counters = counters
        self._clock = clock
        self._leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    # lifetimes
    def access_ttl_for(self, role: Role) -> timedelta:
        if Role(role) == Role.ADMIN:
            return timedelta(minutes=self.settings.admin_access_token_ttl_minutes)
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    def refresh_ttl_for(self, *, remember_me: bool = False) -> timedelta:
        days = (
            self.settings.remember_me_refresh_ttl_days
            if remember_me
            else self.settings.refresh_token_ttl_days
        )
        return timedelta(days=days)

    def _max_refresh_ttl(self) -> timedelta:
        return timedelta(
            days=max(
                self.settings.refresh_token_ttl_days,
                self.settings.remember_me_refresh_ttl_days,
            )
        )

    def _secret_for(self, token_type: TokenType) -> bytes:
        if token_type == TokenType.REFRESH and self.settings.jwt_refresh_secret:
            return self.settings.jwt_refresh_secret.encode()
        return self.settings.jwt_secret.encode()

    # wire format
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: dict[str, Any], token_type: TokenType) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(
            self._secret_for(token_type), signing_input.encode(), hashlib.sha256
        ).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, token_type: TokenType) -> dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            raise TokenInvalid("malformed token")

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            raise TokenInvalid("malformed token header")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise TokenInvalid("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(
                self._secret_for(token_type), signing_input.encode(), hashlib.sha256
            ).digest()
        )
        if not hmac.compare_digest(
            expected_sig.encode(), sig_b64.encode("utf-8", "surrogatepass")
        ):
            raise TokenInvalid("bad token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise TokenInvalid("malformed token payload")
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed token payload")
        return payload

    def _claims_from_payload(self, payload: dict[str, Any]) -> Claims:
        missing = [name for name in _REQUIRED_CLAIMS if payload.get(name) in (None, "")]
        if missing:
            raise TokenInvalid("token is missing required claims")
        if payload["iss"] != self.settings.jwt_issuer:
            raise TokenInvalid("token issuer mismatch")
        if payload["aud"] != self.settings.jwt_audience:
            raise TokenInvalid("token audience mismatch")
        try:
            return Claims(
                sub=str(payload["sub"]),
                email=str(payload["email"]),
                role=Role(payload["role"]),
                type=TokenType(payload["type"]),
                iat=float(payload["iat"]),
                exp=float(payload["exp"]),
                jti=str(payload["jti"]),
                iss=str(payload["iss"]),
                aud=str(payload["aud"]),
            )
        except (TypeError, ValueError):
            raise TokenInvalid("token claims are malformed")

    # operations
    def issue(
        self, principal: Principal, *, refresh_ttl: Optional[timedelta] = None
    ) -> TokenPair:
        now = self._clock()
        iat = now.timestamp()
        access_exp = now + self.access_ttl_for(principal.role)
        refresh_exp = now + (refresh_ttl or self.refresh_ttl_for())
        base = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": principal.id,
            "email": principal.email,
            "role": Role(principal.role).value,
            "iat": iat,
        }
        access_payload = {
            **base,
            "type": TokenType.ACCESS.value,
            "exp": access_exp.timestamp(),
            "jti": str(uuid.uuid4()),
        }
        refresh_payload = {
            **base,
            "type": TokenType.REFRESH.value,
            "exp": refresh_exp.timestamp(),
            "jti": str(uuid.uuid4()),
        }
        return TokenPair(
            access_token=self._encode_jwt(access_payload, TokenType.ACCESS),
            refresh_token=self._encode_jwt(refresh_payload, TokenType.REFRESH),
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    async def verify(self, token: str, expected_type: TokenType) -> Claims:
        expected_type = TokenType(expected_type)
        claims = self._claims_from_payload(self._decode_jwt(token, expected_type))
        if claims.type != expected_type:
            raise TokenInvalid("unexpected token type")
        now = self._clock()
        if claims.exp <= (now - self._leeway).timestamp():
            raise TokenExpired()
        # Store failures propagate so an outage never reads as "not revoked"
        if await self.counters.exists(f"{REVOKED_JTI_PREFIX}{claims.jti}"):
            raise TokenRevoked()
        watermark = await self.counters.get(f"{REVOKED_BEFORE_PREFIX}{claims.sub}")
        if watermark is not None and claims.iat <= float(watermark):
            raise TokenRevoked("token was issued before a logout from all devices")
        return claims

    async def revoke(self, jti: str, ttl: int) -> None:
        if ttl <= 0:
            return
        await self.counters.set(f"{REVOKED_JTI_PREFIX}{jti}", "1", int(ttl))
        logger.info("token_revoked", jti=jti, ttl=int(ttl))

    async def revoke_claims(self, claims: Claims) -> None:
        await self.revoke(claims.jti, claims.remaining_seconds(self._clock().timestamp()))

    async def revoke_all(self, principal_id: str) -> None:
        ttl = int((self._max_refresh_ttl() + self._leeway).total_seconds())
        await self.counters.set(
            f"{REVOKED_BEFORE_PREFIX}{principal_id}",
            repr(self._clock().timestamp()),
            ttl,
        )
        logger.info("tokens_revoked_all", principal_id=principal_id)

    async def rotate_refresh(
        self, old_refresh_token: str, *, principal: Optional[Principal] = None
    ) -> TokenPair:
        claims = await self.verify(old_refresh_token, TokenType.REFRESH)
        ttl = max(1, claims.remaining_seconds(self._clock().timestamp()))
        # Claiming the blacklist slot is the redemption; only one caller wins
        claimed = await self.counters.set_if_absent(
            f"{REVOKED_JTI_PREFIX}{claims.jti}", "1", ttl
        )
        if not claimed:
            logger.warning("refresh_token_reuse", jti=claims.jti, principal_id=claims.sub)
            raise TokenRevoked("refresh token was already used")
        subject = principal or Principal(id=claims.sub, email=claims.email, role=claims.role)
        return self.issue(
            subject, refresh_ttl=timedelta(seconds=claims.lifetime_seconds)
        )
