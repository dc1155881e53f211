from __future__ import annotations

import copy
import json
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from taskauth.logging import get_logger
from taskauth.storage.errors import ConstraintViolation
from taskauth.storage.models import DeviceInfo, Session, User, as_utc


class MemoryStore:
    """In-process backing store for development and tests.

    Every read returns a copy so callers observe the same snapshot semantics
    as with the Postgres store. All mutations run under one re-entrant lock,
    which is what makes refresh rotation and failed-login counting atomic.
    """

    def __init__(self, state_dir: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can be composed inside a locked section
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- users ---------------------------------------------------------------

    def create_user(self, user: User, password_hash: str) -> User:
        with self._data_lock:
            email = user.email.lower()
            username = user.username.lower()
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation(
                    "Email is already registered", {"field": "email"}
                )
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation(
                    "Username is already taken", {"field": "username"}
                )
            stored = copy.deepcopy(user)
            stored.email = email
            stored.username = username
            self.users[stored.id] = stored
            self.credentials[stored.id] = password_hash
            self._persist_state()
            return copy.deepcopy(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return copy.deepcopy(self.users.get(user_id))

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.lower()
        with self._data_lock:
            found = next((u for u in self.users.values() if u.email == email), None)
            return copy.deepcopy(found)

    def find_user_by_email_or_username(
        self, email: str, username: str
    ) -> Optional[User]:
        email, username = email.lower(), username.lower()
        with self._data_lock:
            found = next(
                (
                    u
                    for u in self.users.values()
                    if u.email == email or u.username == username
                ),
                None,
            )
            return copy.deepcopy(found)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            users = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [copy.deepcopy(u) for u in users[:limit]]

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def update_password(
        self, user_id: str, password_hash: str, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            self.credentials[user_id] = password_hash
            user.set_password_changed(now)
            self._persist_state()
            return copy.deepcopy(user)

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_duration: timedelta,
        now: datetime,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.register_failed_login(
                max_attempts=max_attempts, lock_duration=lock_duration, now=now
            )
            self._persist_state()
            return copy.deepcopy(user)

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.register_successful_login(now)
            self._persist_state()
            return copy.deepcopy(user)

    def set_user_admin(self, user_id: str, is_admin: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_admin = is_admin
            self._persist_state()
            return copy.deepcopy(user)

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.is_active = is_active
            self._persist_state()
            return copy.deepcopy(user)

    def add_active_session(self, user_id: str, session_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.add_session(session_id)
            self._persist_state()

    def remove_active_session(self, user_id: str, session_id: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or session_id not in user.active_sessions:
                return
            user.active_sessions.remove(session_id)
            self._persist_state()

    def replace_active_sessions(self, user_id: str, session_ids: Iterable[str]) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return
            user.active_sessions = []
            for session_id in session_ids:
                user.add_session(session_id)
            self._persist_state()

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation(
                    "session user missing", {"user_id": session.user_id}
                )
            if session.id in self.sessions:
                raise ConstraintViolation("session id already exists", {"field": "id"})
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return copy.deepcopy(self.sessions.get(session_id))

    def find_session_for_refresh(
        self, session_id: str, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or sess.refresh_token_hash != refresh_token_hash
                or not sess.is_usable(now)
            ):
                return None
            return copy.deepcopy(sess)

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._data_lock:
            active = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_usable(now)
            ]
            active.sort(key=lambda s: as_utc(s.last_accessed_at), reverse=True)
            return [copy.deepcopy(s) for s in active]

    def rotate_refresh_token(
        self, session_id: str, expected_hash: str, new_hash: str, now: datetime
    ) -> Optional[Session]:
        """Swap the stored refresh hash only if it still equals ``expected_hash``."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if (
                not sess
                or sess.refresh_token_hash != expected_hash
                or not sess.is_usable(now)
            ):
                return None
            sess.rotate(new_hash, now)
            self._persist_state()
            return copy.deepcopy(sess)

    def set_refresh_token_hash(
        self, session_id: str, new_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_usable(now):
                return None
            sess.rotate(new_hash, now)
            self._persist_state()
            return copy.deepcopy(sess)

    def touch_session(self, session_id: str, now: datetime) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return None
            sess.touch(now)
            self._persist_state()
            return copy.deepcopy(sess)

    def deactivate_session(self, session_id: str, reason: str, now: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess:
                return False
            changed = sess.deactivate(reason, now)
            if changed:
                self._persist_state()
            return changed

    def deactivate_user_sessions(
        self,
        user_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            count = 0
            for sess in self.sessions.values():
                if sess.user_id != user_id or sess.id == except_session_id:
                    continue
                if sess.deactivate(reason, now):
                    count += 1
            if count:
                self._persist_state()
            return count

    def detect_reuse(
        self, token_family: str, current_session_id: str, now: datetime
    ) -> bool:
        with self._data_lock:
            others = [
                s
                for s in self.sessions.values()
                if s.token_family == token_family
                and s.is_active
                and s.id != current_session_id
            ]
            if not others:
                return False
            self.revoke_token_family(token_family, now)
            return True

    def revoke_token_family(self, token_family: str, now: datetime) -> int:
        with self._data_lock:
            family = [
                s
                for s in self.sessions.values()
                if s.token_family == token_family and s.is_active
            ]
            for sess in family:
                sess.mark_breached(now)
            if family:
                self._persist_state()
            return len(family)

    def cleanup_expired_sessions(self, now: datetime, retention: timedelta) -> int:
        cutoff = now - retention
        with self._data_lock:
            doomed = [
                sid
                for sid, s in self.sessions.items()
                if s.is_expired(now)
                or (not s.is_active and as_utc(s.updated_at) < cutoff)
            ]
            for sid in doomed:
                self.sessions.pop(sid, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # -- snapshot ------------------------------------------------------------

    def _state_path(self) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return as_utc(datetime.fromisoformat(raw)) if raw else None

    def _serialize_user(self, user: User) -> Dict[str, Any]:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "is_active": user.is_active,
            "is_email_verified": user.is_email_verified,
            "is_admin": user.is_admin,
            "failed_login_attempts": user.failed_login_attempts,
            "account_locked_until": self._serialize_datetime(user.account_locked_until),
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "last_login": self._serialize_datetime(user.last_login),
            "max_concurrent_sessions": user.max_concurrent_sessions,
            "active_sessions": list(user.active_sessions),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: Dict[str, Any]) -> User:
        return User(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            is_active=data.get("is_active", True),
            is_email_verified=data.get("is_email_verified", False),
            is_admin=data.get("is_admin", False),
            failed_login_attempts=data.get("failed_login_attempts", 0),
            account_locked_until=self._deserialize_datetime(data.get("account_locked_until")),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            max_concurrent_sessions=data.get("max_concurrent_sessions", 5),
            active_sessions=list(data.get("active_sessions", [])),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_session(self, sess: Session) -> Dict[str, Any]:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "token_family": sess.token_family,
            "refresh_token_hash": sess.refresh_token_hash,
            "device_info": sess.device_info.to_dict(),
            "is_active": sess.is_active,
            "login_method": sess.login_method,
            "risk_score": sess.risk_score,
            "metadata": dict(sess.metadata),
            "expires_at": self._serialize_datetime(sess.expires_at),
            "created_at": self._serialize_datetime(sess.created_at),
            "updated_at": self._serialize_datetime(sess.updated_at),
            "last_accessed_at": self._serialize_datetime(sess.last_accessed_at),
        }

    def _deserialize_session(self, data: Dict[str, Any]) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            token_family=data["token_family"],
            refresh_token_hash=data.get("refresh_token_hash", ""),
            device_info=DeviceInfo.from_dict(data.get("device_info")),
            is_active=data.get("is_active", True),
            login_method=data.get("login_method", "password"),
            risk_score=data.get("risk_score", 0),
            metadata=dict(data.get("metadata") or {}),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            last_accessed_at=self._deserialize_datetime(data["last_accessed_at"]),
        )

    def _persist_state(self) -> None:
        path = self._state_path()
        if path is None:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {"user_id": user_id, "password_hash": pwd_hash}
                for user_id, pwd_hash in self.credentials.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        if path is None:
            return False
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: entry["password_hash"]
            for entry in data.get("credentials", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
