from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Set

from taskauth.config import Settings
from taskauth.logging import get_logger
from taskauth.service.credentials import CredentialService
from taskauth.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    NotFoundError,
    PasswordChangedError,
    RefreshTokenInvalidError,
    RefreshTokenMissingError,
    SessionInvalidError,
    SessionNotFoundError,
    TokenExpiredError,
    TokenInvalidError,
    TokenMissingError,
    TokenReuseDetectedError,
    UserNotFoundError,
)
from taskauth.service.tokens import ACCESS, REFRESH, TokenCodec, TokenExpired, TokenInvalid
from taskauth.storage.models import DeviceInfo, Session, User

logger = get_logger(__name__)

# Session deactivation reasons
REASON_LOGOUT = "user_logout"
REASON_LOGOUT_ALL = "user_logout_all"
REASON_REVOKED = "user_revoked"
REASON_PASSWORD_CHANGED = "password_changed"
REASON_ACCOUNT_DEACTIVATED = "account_deactivated"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresIn": self.expires_in,
        }


@dataclass
class AuthResult:
    user: User
    session: Session
    tokens: TokenPair


@dataclass
class AuthContext:
    """Identity attached to a request that passed the gate."""

    user: User
    session: Session
    claims: Dict[str, Any] = field(default_factory=dict)

    @property
    def user_id(self) -> str:
        return self.user.id

    @property
    def session_id(self) -> str:
        return self.session.id


class AuthService:
    """Session lifecycle: registration, login, rotation, revocation and the request gate."""

    def __init__(
        self,
        store,
        credentials: CredentialService,
        tokens: TokenCodec,
        settings: Settings,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.tokens = tokens
        self.settings = settings
        self.session_retention = timedelta(hours=settings.session_retention_hours)
        self._touch_tasks: Set[asyncio.Task] = set()
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        return token.strip() or None

    # -- token issuance ------------------------------------------------------

    def _issue_pair(
        self, user: User, session: Session, *, ttl: timedelta, now: datetime
    ) -> TokenPair:
        access = self.tokens.issue_access(
            {
                "userId": user.id,
                "sessionId": session.id,
                "username": user.username,
                "email": user.email,
            },
            now=now,
        )
        refresh = self.tokens.issue_refresh(
            {
                "userId": user.id,
                "sessionId": session.id,
                "tokenFamily": session.token_family,
            },
            ttl=ttl,
            now=now,
        )
        return TokenPair(access, refresh, self.tokens.expires_in)

    def _start_session(
        self,
        user: User,
        device: Optional[DeviceInfo],
        *,
        login_method: str,
        remember_me: bool = False,
    ) -> tuple[Session, TokenPair]:
        now = self._now()
        ttl = self.tokens.refresh_ttl(remember_me)
        session = Session.new(user.id, ttl, device, login_method=login_method, now=now)
        if remember_me:
            session.metadata["rememberMe"] = "true"
        pair = self._issue_pair(user, session, ttl=ttl, now=now)
        session.refresh_token_hash = self.tokens.hash_token(pair.refresh_token)
        self.store.create_session(session)
        self._cache_add(user.id, session.id)
        self.logger.info(
            "session_created",
            user_id=user.id,
            session_id=session.id,
            login_method=login_method,
            risk_score=session.risk_score,
        )
        return session, pair

    # -- active-session cache (best effort) ----------------------------------

    def _cache_add(self, user_id: str, session_id: str) -> None:
        try:
            self.store.add_active_session(user_id, session_id)
        except Exception as exc:
            self.logger.warning(
                "active_session_cache_update_failed",
                user_id=user_id,
                session_id=session_id,
                error=str(exc),
            )

    def _cache_remove(self, user_id: str, session_id: str) -> None:
        try:
            self.store.remove_active_session(user_id, session_id)
        except Exception as exc:
            self.logger.warning(
                "active_session_cache_update_failed",
                user_id=user_id,
                session_id=session_id,
                error=str(exc),
            )

    def _cache_replace(self, user_id: str, session_ids: List[str]) -> None:
        try:
            self.store.replace_active_sessions(user_id, session_ids)
        except Exception as exc:
            self.logger.warning(
                "active_session_cache_update_failed", user_id=user_id, error=str(exc)
            )

    # -- lifecycle -----------------------------------------------------------

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        user = self.credentials.create_user(
            username, email, password, first_name=first_name, last_name=last_name
        )
        session, pair = self._start_session(user, device, login_method="registration")
        return AuthResult(self.store.get_user(user.id) or user, session, pair)

    async def login(
        self,
        email: str,
        password: str,
        *,
        remember_me: bool = False,
        device: Optional[DeviceInfo] = None,
    ) -> AuthResult:
        user = self.credentials.authenticate(email, password, self._now())
        session, pair = self._start_session(
            user, device, login_method="password", remember_me=remember_me
        )
        self.logger.info("user_logged_in", user_id=user.id, session_id=session.id)
        return AuthResult(self.store.get_user(user.id) or user, session, pair)

    async def refresh(self, refresh_token: Optional[str]) -> TokenPair:
        """Rotate a refresh token, keeping the session id and token family.

        A signed token whose session is still live but whose hash was already
        rotated away is a replay: the whole family is revoked before the
        error is returned.
        """
        if not refresh_token:
            raise RefreshTokenMissingError("Refresh token is required")
        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except (TokenExpired, TokenInvalid) as exc:
            raise RefreshTokenInvalidError("Invalid or expired refresh token") from exc

        now = self._now()
        session_id = claims["sessionId"]
        family = claims["tokenFamily"]
        token_hash = self.tokens.hash_token(refresh_token)

        session = self.store.find_session_for_refresh(session_id, token_hash, now)
        if session is None:
            current = self.store.get_session(session_id)
            if (
                current is not None
                and current.is_usable(now)
                and current.user_id == claims["userId"]
                and current.token_family == family
                and current.refresh_token_hash != token_hash
            ):
                revoked = self.store.revoke_token_family(family, now)
                self._cache_remove(current.user_id, current.id)
                self.logger.warning(
                    "refresh_token_reuse_detected",
                    user_id=current.user_id,
                    session_id=current.id,
                    token_family=family,
                    revoked=revoked,
                )
                raise TokenReuseDetectedError(
                    "Refresh token reuse detected; all sessions in this family were revoked"
                )
            raise SessionInvalidError("Session is invalid or has expired")

        if session.user_id != claims["userId"] or session.token_family != family:
            raise SessionInvalidError("Session is invalid or has expired")

        if self.store.detect_reuse(family, session.id, now):
            self._cache_remove(session.user_id, session.id)
            self.logger.warning(
                "refresh_token_reuse_detected",
                user_id=session.user_id,
                session_id=session.id,
                token_family=family,
            )
            raise TokenReuseDetectedError(
                "Refresh token reuse detected; all sessions in this family were revoked"
            )

        user = self.store.get_user(session.user_id)
        if not user:
            raise SessionInvalidError("Session is invalid or has expired")
        if not user.is_active:
            raise AccountDeactivatedError("Account has been deactivated")

        pair = self._issue_pair(user, session, ttl=session.expires_at - now, now=now)
        rotated = self.store.rotate_refresh_token(
            session.id, token_hash, self.tokens.hash_token(pair.refresh_token), now
        )
        if rotated is None:
            # Another refresh with the same token won the compare-and-swap
            self.logger.info("refresh_rotation_lost", session_id=session.id)
            raise SessionInvalidError("Session is invalid or has expired")
        self._cache_add(user.id, session.id)
        self.logger.info("refresh_token_rotated", user_id=user.id, session_id=session.id)
        return pair

    async def logout(self, user_id: str, session_id: str) -> bool:
        """Deactivate one session. Repeating it is a no-op."""
        changed = self.store.deactivate_session(session_id, REASON_LOGOUT, self._now())
        self._cache_remove(user_id, session_id)
        if changed:
            self.logger.info("user_logged_out", user_id=user_id, session_id=session_id)
        return changed

    async def logout_all(self, user_id: str) -> int:
        revoked = self.store.deactivate_user_sessions(
            user_id, REASON_LOGOUT_ALL, self._now()
        )
        self._cache_replace(user_id, [])
        self.logger.info("user_logged_out_everywhere", user_id=user_id, revoked=revoked)
        return revoked

    async def change_password(
        self, ctx: AuthContext, current_password: str, new_password: str
    ) -> TokenPair:
        now = self._now()
        user = self.credentials.change_password(
            ctx.user_id, current_password, new_password, now
        )
        revoked = self.store.deactivate_user_sessions(
            user.id, REASON_PASSWORD_CHANGED, now, except_session_id=ctx.session_id
        )
        self._cache_replace(user.id, [ctx.session_id])

        session = ctx.session
        pair = self._issue_pair(user, session, ttl=session.expires_at - now, now=now)
        if (
            self.store.set_refresh_token_hash(
                session.id, self.tokens.hash_token(pair.refresh_token), now
            )
            is None
        ):
            raise SessionInvalidError("Session is invalid or has expired")
        self.logger.info(
            "password_change_sessions_revoked",
            user_id=user.id,
            kept_session_id=session.id,
            revoked=revoked,
        )
        return pair

    async def list_sessions(self, ctx: AuthContext) -> List[Session]:
        """Active sessions, most recently used first; repairs the cached id list."""
        sessions = self.store.list_active_sessions(ctx.user_id, self._now())
        by_age = sorted(sessions, key=lambda s: s.created_at)
        expected = [s.id for s in by_age][-max(ctx.user.max_concurrent_sessions, 1):]
        user = self.store.get_user(ctx.user_id)
        if user and set(user.active_sessions) != set(expected):
            self.logger.info(
                "active_session_cache_reconciled",
                user_id=ctx.user_id,
                cached=len(user.active_sessions),
                active=len(sessions),
            )
            self._cache_replace(ctx.user_id, expected)
        return sessions

    async def revoke_session(self, ctx: AuthContext, session_id: str) -> None:
        now = self._now()
        target = self.store.get_session(session_id)
        if not target or target.user_id != ctx.user_id or not target.is_usable(now):
            raise SessionNotFoundError("Session not found")
        self.store.deactivate_session(session_id, REASON_REVOKED, now)
        self._cache_remove(ctx.user_id, session_id)
        self.logger.info("session_revoked", user_id=ctx.user_id, session_id=session_id)

    # -- request gate --------------------------------------------------------

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        token = self._extract_bearer(authorization)
        if not token:
            raise TokenMissingError("Access token is required")
        try:
            claims = self.tokens.verify(token, ACCESS)
        except TokenExpired as exc:
            raise TokenExpiredError("Access token has expired") from exc
        except TokenInvalid as exc:
            raise TokenInvalidError("Invalid access token") from exc

        now = self._now()
        session = self.store.get_session(claims["sessionId"])
        if session is None or session.user_id != claims["userId"]:
            raise SessionInvalidError("Session is invalid or has expired")
        if not session.is_usable(now):
            if session.deactivation_reason == REASON_PASSWORD_CHANGED:
                raise PasswordChangedError("Password was changed, please log in again")
            raise SessionInvalidError("Session is invalid or has expired")

        user = self.store.get_user(session.user_id)
        if not user:
            raise UserNotFoundError("User no longer exists")
        if not user.is_active:
            raise AccountDeactivatedError("Account has been deactivated")
        if user.is_locked(now):
            raise AccountLockedError(
                "Account is temporarily locked",
                detail={"lockedUntil": user.account_locked_until.isoformat()},
            )
        if user.changed_password_after(claims["iat"]):
            self.store.deactivate_session(session.id, REASON_PASSWORD_CHANGED, now)
            self._cache_remove(user.id, session.id)
            raise PasswordChangedError("Password was changed, please log in again")

        self._schedule_touch(session.id, now)
        return AuthContext(user=user, session=session, claims=claims)

    def _schedule_touch(self, session_id: str, now: datetime) -> None:
        task = asyncio.create_task(self._touch(session_id, now))
        self._touch_tasks.add(task)
        task.add_done_callback(self._touch_tasks.discard)

    async def _touch(self, session_id: str, now: datetime) -> None:
        try:
            await asyncio.to_thread(self.store.touch_session, session_id, now)
        except Exception as exc:
            self.logger.warning("session_touch_failed", session_id=session_id, error=str(exc))

    # -- maintenance ---------------------------------------------------------

    def cleanup_expired_sessions(self) -> int:
        removed = self.store.cleanup_expired_sessions(self._now(), self.session_retention)
        if removed:
            self.logger.info("expired_sessions_removed", removed=removed)
        return removed

    async def set_user_active(self, user_id: str, is_active: bool) -> User:
        user = self.store.set_user_active(user_id, is_active)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        if not is_active:
            revoked = self.store.deactivate_user_sessions(
                user_id, REASON_ACCOUNT_DEACTIVATED, self._now()
            )
            self._cache_replace(user_id, [])
            self.logger.warning("user_deactivated", user_id=user_id, revoked=revoked)
        else:
            self.logger.info("user_reactivated", user_id=user_id)
        return user

    async def promote_admin(self, user_id: str) -> User:
        user = self.store.set_user_admin(user_id, True)
        if not user:
            raise NotFoundError("User not found", detail={"user_id": user_id})
        self.logger.info("user_promoted_admin", user_id=user_id)
        return user
