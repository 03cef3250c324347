from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Optional

from schoolauth.config import Settings
from schoolauth.logging import get_logger
from schoolauth.service.errors import AuthenticationError
from schoolauth.service.revocation import RevocationCache
from schoolauth.storage.models import Account

logger = get_logger(__name__)


class TokenKind(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"
    VERIFY = "verify"
    RESET = "reset"


@dataclass(frozen=True)
class TokenClaims:
    subject: str
    kind: TokenKind
    issued_at: datetime
    expires_at: datetime
    jti: str
    role: Optional[str] = None
    verified: Optional[bool] = None
    raw: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenCodec:
    """HS256 tokens with one signing key per token kind.

    Issuing is pure. ``verify`` consults the revocation cache for access
    tokens and the consumed-refresh cache for refresh tokens.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        revocations: Optional[RevocationCache] = None,
        consumed_refresh: Optional[RevocationCache] = None,
        clock: Callable[[], datetime] = _utcnow,
        leeway: timedelta = timedelta(0),
    ) -> None:
        self.settings = settings
        self.revocations = revocations or RevocationCache.from_settings(settings)
        self.consumed_refresh = consumed_refresh or RevocationCache.from_settings(
            settings, name="consumed_refresh"
        )
        self._clock = clock
        self._leeway = leeway

    def ttl_for(self, kind: TokenKind, *, remember_me: bool = False) -> timedelta:
        s = self.settings
        if kind == TokenKind.ACCESS:
            return timedelta(minutes=s.access_token_ttl_minutes)
        if kind == TokenKind.REFRESH:
            days = s.refresh_token_remember_ttl_days if remember_me else s.refresh_token_ttl_days
            return timedelta(days=days)
        if kind == TokenKind.VERIFY:
            return timedelta(hours=s.verification_token_ttl_hours)
        return timedelta(minutes=s.reset_token_ttl_minutes)

    @property
    def access_ttl_seconds(self) -> int:
        return int(self.ttl_for(TokenKind.ACCESS).total_seconds())

    # -- encoding -------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, kind: TokenKind, signing_input: str) -> str:
        key = self.settings.signing_secret(kind.value).encode()
        digest = hmac.new(key, signing_input.encode(), hashlib.sha256).digest()
        return self._encode_segment(digest)

    def _issue(self, account: Account, kind: TokenKind, ttl: timedelta, **claims: Any) -> str:
        now = self._clock()
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account.id,
            "kind": kind.value,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            **claims,
        }
        header = self._encode_segment(
            json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode()
        )
        body = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header}.{body}"
        return f"{signing_input}.{self._sign(kind, signing_input)}"

    def issue_access(self, account: Account) -> str:
        return self._issue(
            account,
            TokenKind.ACCESS,
            self.ttl_for(TokenKind.ACCESS),
            role=account.role.value,
            verified=account.verified,
        )

    def issue_refresh(self, account: Account, *, remember_me: bool = False) -> str:
        return self._issue(
            account,
            TokenKind.REFRESH,
            self.ttl_for(TokenKind.REFRESH, remember_me=remember_me),
            role=account.role.value,
            verified=account.verified,
            rem=bool(remember_me),
        )

    def issue_verification(self, account: Account) -> str:
        return self._issue(account, TokenKind.VERIFY, self.ttl_for(TokenKind.VERIFY), email=account.email)

    def issue_reset(self, account: Account) -> str:
        return self._issue(account, TokenKind.RESET, self.ttl_for(TokenKind.RESET), email=account.email)

    # -- verification ---------------------------------------------------

    def _decode(self, token: str, expected_kind: TokenKind) -> dict[str, Any]:
        invalid = AuthenticationError("invalid token", error_code="invalid_token")
        if not token or not isinstance(token, str):
            raise invalid
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise invalid from None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("token_header_decode_failed")
            raise invalid from None
        alg = header.get("alg") if isinstance(header, dict) else None
        if alg != "HS256":
            logger.warning("token_invalid_algorithm", alg=alg)
            raise invalid
        expected_sig = self._sign(expected_kind, f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig, sig_b64):
            raise invalid
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("token_payload_decode_failed", error=str(exc))
            raise invalid from None
        if not isinstance(payload, dict):
            raise invalid
        if payload.get("iss") != self.settings.jwt_issuer:
            raise invalid
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud or not payload.get("sub"):
            raise invalid
        return payload

    def verify(self, token: str, expected_kind: TokenKind) -> TokenClaims:
        """Check signature, kind and expiry, then revocation state.

        Raises ``AuthenticationError`` for a bad signature, wrong kind,
        expired token, or a revoked/consumed token.
        """
        payload = self._decode(token, expected_kind)
        if payload.get("kind") != expected_kind.value:
            raise AuthenticationError("invalid token type", error_code="invalid_token")
        try:
            exp = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
            iat = datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc)
        except (KeyError, TypeError, ValueError):
            raise AuthenticationError("invalid token", error_code="invalid_token") from None
        if exp <= self._clock() - self._leeway:
            raise AuthenticationError("token expired", error_code="token_expired")
        jti = str(payload.get("jti") or "")
        if expected_kind == TokenKind.ACCESS and token in self.revocations:
            raise AuthenticationError("token has been revoked", error_code="token_revoked")
        if expected_kind == TokenKind.REFRESH and jti and jti in self.consumed_refresh:
            raise AuthenticationError("token has been revoked", error_code="token_revoked")
        return TokenClaims(
            subject=str(payload["sub"]),
            kind=expected_kind,
            issued_at=iat,
            expires_at=exp,
            jti=jti,
            role=payload.get("role"),
            verified=payload.get("verified"),
            raw=payload,
        )

    def revoke(self, token: str) -> None:
        """Blacklist an access token until it is evicted from the cache."""
        self.revocations.add(token)

    def consume_refresh(self, claims: TokenClaims) -> bool:
        """Mark a refresh token as spent; False if it already was."""
        if claims.kind != TokenKind.REFRESH or not claims.jti:
            return False
        return self.consumed_refresh.add(claims.jti)
