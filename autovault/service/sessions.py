from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

from autovault.logging import get_logger
from autovault.storage.expiring import ExpiringStore
from autovault.storage.models import Account

logger = get_logger(__name__)

DENYLIST_PREFIX = "auth:denylist:"
_ABSENT_TOKENS = {"", "undefined", "null"}


def password_version(account: Account) -> int:
    """Millisecond stamp of the last password change, carried in every token."""
    return int(account.password_changed_at.timestamp() * 1000)


@dataclass
class IssuedToken:
    token: str
    jti: str
    expires_at: datetime

    @property
    def max_age(self) -> int:
        return max(0, int((self.expires_at - datetime.now(timezone.utc)).total_seconds()))


class SessionIssuer:
    """Stateless HS256 bearer tokens with a shared denylist for revocation.

    Extraction order is the Authorization header first, then the session
    cookie. The cookie is httpOnly, path ``/``, with one SameSite value used
    for both issuing and clearing it.
    """

    def __init__(
        self,
        *,
        secret: str,
        issuer: str,
        audience: str,
        denylist: ExpiringStore,
        ttl: timedelta = timedelta(days=7),
        cookie_name: str = "token",
        cookie_samesite: str = "lax",
        cookie_secure: bool = False,
        leeway_seconds: int = 30,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.denylist = denylist
        self.ttl = ttl
        self.cookie_name = cookie_name
        self.cookie_samesite = cookie_samesite
        self.cookie_secure = cookie_secure
        self.leeway_seconds = leeway_seconds
        self._clock = clock

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

    def _encode(self, payload: Dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def issue(self, account: Account) -> IssuedToken:
        now = self._clock()
        exp = now + self.ttl.total_seconds()
        jti = str(uuid.uuid4())
        payload = {
            "sub": account.id,
            "email": account.email,
            "username": account.username,
            "role": account.role,
            "jti": jti,
            "iat": int(now),
            "exp": int(exp),
            "iss": self.issuer,
            "aud": self.audience,
            "pwv": password_version(account),
        }
        return IssuedToken(
            token=self._encode(payload),
            jti=jti,
            expires_at=datetime.fromtimestamp(int(exp), tz=timezone.utc),
        )

    def verify(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the claims of a well-formed, signed, unexpired token, else None."""
        if not token:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None
        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self.leeway_seconds:
            return None
        if not payload.get("sub") or not payload.get("jti"):
            return None
        return payload

    async def is_revoked(self, claims: Dict[str, Any]) -> bool:
        return await self.denylist.exists(f"{DENYLIST_PREFIX}{claims['jti']}")

    async def authenticate(self, token: Optional[str]) -> Optional[Dict[str, Any]]:
        """``verify`` plus the denylist check."""
        claims = self.verify(token)
        if claims is None:
            return None
        if await self.is_revoked(claims):
            return None
        return claims

    async def revoke(self, token: Optional[str]) -> bool:
        """Denylist ``token`` until it would have expired anyway."""
        claims = self.verify(token)
        if claims is None:
            return False
        # Lives until the token stops verifying, leeway included
        ttl = max(0, int(float(claims["exp"]) + self.leeway_seconds - self._clock()))
        if ttl <= 0:
            return False
        await self.denylist.set(f"{DENYLIST_PREFIX}{claims['jti']}", "1", ttl)
        logger.info("session_revoked", account_id=claims.get("sub"), ttl=ttl)
        return True

    async def sweep(self) -> int:
        return await self.denylist.sweep()

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip()

    def extract_token(
        self, authorization: Optional[str], cookie_value: Optional[str]
    ) -> Optional[str]:
        for candidate in (self._extract_bearer(authorization), cookie_value):
            if candidate and candidate.strip() not in _ABSENT_TOKENS:
                return candidate.strip()
        return None

    def cookie_params(self, issued: IssuedToken) -> Dict[str, Any]:
        return {
            "key": self.cookie_name,
            "value": issued.token,
            "max_age": int(self.ttl.total_seconds()),
            "httponly": True,
            "secure": self.cookie_secure,
            "samesite": self.cookie_samesite,
            "path": "/",
        }

    def clear_cookie_params(self) -> Dict[str, Any]:
        return {
            "key": self.cookie_name,
            "httponly": True,
            "secure": self.cookie_secure,
            "samesite": self.cookie_samesite,
            "path": "/",
        }
