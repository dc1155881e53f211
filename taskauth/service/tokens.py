from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Mapping, Optional

import jwt
from jwt.exceptions import ExpiredSignatureError, InvalidTokenError

from taskauth.config import Settings
from taskauth.storage.models import utcnow

ACCESS = "access"
REFRESH = "refresh"

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = {
    ACCESS: ("userId", "sessionId", "username", "email"),
    REFRESH: ("userId", "sessionId", "tokenFamily"),
}


class TokenExpired(Exception):
    """Signature checks out but the token is past ``exp``."""


class TokenInvalid(Exception):
    """Bad signature, wrong issuer/audience, wrong kind or malformed token."""


class TokenCodec:
    """Issue and verify the access/refresh JWT pair.

    Access and refresh tokens are signed with different secrets, so a refresh
    token can never pass as an access token and vice versa even before the
    ``type`` discriminator is checked.
    """

    def __init__(self, settings: Settings) -> None:
        self._secrets = {
            ACCESS: settings.jwt_secret,
            REFRESH: settings.jwt_refresh_secret,
        }
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl_default = timedelta(days=settings.refresh_token_ttl_days)
        self.refresh_ttl_remember = timedelta(days=settings.remember_me_refresh_ttl_days)

    @property
    def expires_in(self) -> str:
        minutes = int(self.access_ttl.total_seconds() // 60)
        return f"{minutes}m"

    def refresh_ttl(self, remember_me: bool = False) -> timedelta:
        return self.refresh_ttl_remember if remember_me else self.refresh_ttl_default

    @staticmethod
    def hash_token(raw: str) -> str:
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _encode(
        self, kind: str, claims: Mapping[str, Any], ttl: timedelta, now: Optional[datetime]
    ) -> str:
        missing = [name for name in _REQUIRED_CLAIMS[kind] if not claims.get(name)]
        if missing:
            raise ValueError(f"{kind} token missing claims: {', '.join(missing)}")
        now = now or utcnow()
        payload: Dict[str, Any] = dict(claims)
        payload.update(
            {
                "iat": int(now.timestamp()),
                "exp": int((now + ttl).timestamp()),
                "iss": self.issuer,
                "aud": self.audience,
                "jti": uuid.uuid4().hex,
            }
        )
        if kind == REFRESH:
            payload["type"] = REFRESH
        else:
            payload.pop("type", None)
        return jwt.encode(payload, self._secrets[kind], algorithm=_ALGORITHM)

    def issue_access(
        self, claims: Mapping[str, Any], *, now: Optional[datetime] = None
    ) -> str:
        return self._encode(ACCESS, claims, self.access_ttl, now)

    def issue_refresh(
        self,
        claims: Mapping[str, Any],
        *,
        remember_me: bool = False,
        ttl: Optional[timedelta] = None,
        now: Optional[datetime] = None,
    ) -> str:
        return self._encode(REFRESH, claims, ttl or self.refresh_ttl(remember_me), now)

    def verify(self, token: str, kind: str) -> Dict[str, Any]:
        """Decode ``token`` as ``kind`` and return its claims.

        Raises ``TokenExpired`` only when the signature is valid and ``exp`` has
        passed; every other failure is ``TokenInvalid``.
        """
        if kind not in self._secrets:
            raise ValueError(f"unknown token kind: {kind}")
        if not token or not isinstance(token, str):
            raise TokenInvalid("empty token")
        try:
            claims = jwt.decode(
                token,
                self._secrets[kind],
                algorithms=[_ALGORITHM],
                issuer=self.issuer,
                audience=self.audience,
                options={"require": ["exp", "iat", "iss", "aud"]},
            )
        except ExpiredSignatureError as exc:
            raise TokenExpired(str(exc)) from exc
        except InvalidTokenError as exc:
            raise TokenInvalid(str(exc)) from exc

        if kind == REFRESH and claims.get("type") != REFRESH:
            raise TokenInvalid("not a refresh token")
        if kind == ACCESS and "type" in claims:
            raise TokenInvalid("not an access token")
        for name in _REQUIRED_CLAIMS[kind]:
            if not isinstance(claims.get(name), str) or not claims[name]:
                raise TokenInvalid(f"missing claim {name}")
        return claims
