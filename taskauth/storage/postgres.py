from __future__ import annotations

import json
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from taskauth.logging import get_logger
from taskauth.storage.errors import ConstraintViolation, StoreUnavailable
from taskauth.storage.models import DeviceInfo, Session, User, as_utc

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        account_locked_until TIMESTAMPTZ,
        password_changed_at TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        max_concurrent_sessions INTEGER NOT NULL DEFAULT 5,
        active_sessions TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id TEXT PRIMARY KEY REFERENCES app_user (id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL DEFAULT 'argon2id',
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user (id) ON DELETE CASCADE,
        token_family TEXT NOT NULL,
        refresh_token_hash TEXT NOT NULL,
        device_info JSONB NOT NULL DEFAULT '{}'::jsonb,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        login_method TEXT NOT NULL DEFAULT 'password',
        risk_score INTEGER NOT NULL DEFAULT 0,
        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        last_accessed_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_active_idx ON auth_session (user_id, is_active)",
    "CREATE INDEX IF NOT EXISTS auth_session_family_idx ON auth_session (token_family)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
)

_UNIQUE_FIELD_MESSAGES = {
    "app_user_email_key": ("email", "Email is already registered"),
    "app_user_username_key": ("username", "Username is already taken"),
}


class PostgresStore:
    """Postgres-backed store for users, credentials and sessions."""

    def __init__(
        self,
        dsn: str,
        *,
        connect_timeout: int = 5,
        statement_timeout: int = 45,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=connect_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": connect_timeout,
                "options": f"-c statement_timeout={statement_timeout * 1000}",
            },
            open=True,
        )
        try:
            self.pool.wait(timeout=connect_timeout)
        except PoolTimeout as exc:
            self.pool.close()
            raise StoreUnavailable(
                f"could not connect to postgres within {connect_timeout}s"
            ) from exc
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping ---------------------------------------------------------

    @staticmethod
    def _opt_utc(value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def _user_from_row(self, row: Dict[str, Any]) -> User:
        return User(
            id=row["id"],
            username=row["username"],
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            is_active=row["is_active"],
            is_email_verified=row["is_email_verified"],
            is_admin=row["is_admin"],
            failed_login_attempts=row["failed_login_attempts"],
            account_locked_until=self._opt_utc(row.get("account_locked_until")),
            password_changed_at=self._opt_utc(row.get("password_changed_at")),
            last_login=self._opt_utc(row.get("last_login")),
            max_concurrent_sessions=row["max_concurrent_sessions"],
            active_sessions=list(row.get("active_sessions") or []),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )

    @staticmethod
    def _json_field(value: Any) -> Dict[str, Any]:
        if isinstance(value, str):
            return json.loads(value)
        return dict(value or {})

    def _session_from_row(self, row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=row["user_id"],
            token_family=row["token_family"],
            refresh_token_hash=row["refresh_token_hash"],
            device_info=DeviceInfo.from_dict(self._json_field(row.get("device_info"))),
            is_active=row["is_active"],
            login_method=row["login_method"],
            risk_score=row["risk_score"],
            metadata={
                str(k): str(v) for k, v in self._json_field(row.get("metadata")).items()
            },
            expires_at=as_utc(row["expires_at"]),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            last_accessed_at=as_utc(row["last_accessed_at"]),
        )

    def _write_user_state(self, conn, user: User) -> None:
        conn.execute(
            """
            UPDATE app_user
            SET failed_login_attempts = %s, account_locked_until = %s,
                password_changed_at = %s, last_login = %s, is_active = %s,
                is_admin = %s, active_sessions = %s, updated_at = %s
            WHERE id = %s
            """,
            (
                user.failed_login_attempts,
                user.account_locked_until,
                user.password_changed_at,
                user.last_login,
                user.is_active,
                user.is_admin,
                list(user.active_sessions),
                user.updated_at,
                user.id,
            ),
        )

    def _write_session_state(self, conn, sess: Session) -> None:
        conn.execute(
            """
            UPDATE auth_session
            SET refresh_token_hash = %s, is_active = %s, risk_score = %s,
                metadata = %s, updated_at = %s, last_accessed_at = %s
            WHERE id = %s
            """,
            (
                sess.refresh_token_hash,
                sess.is_active,
                sess.risk_score,
                json.dumps(sess.metadata),
                sess.updated_at,
                sess.last_accessed_at,
                sess.id,
            ),
        )

    def _lock_user(self, conn, user_id: str) -> Optional[User]:
        row = conn.execute(
            "SELECT * FROM app_user WHERE id = %s FOR UPDATE", (user_id,)
        ).fetchone()
        return self._user_from_row(row) if row else None

    def _lock_session(self, conn, session_id: str) -> Optional[Session]:
        row = conn.execute(
            "SELECT * FROM auth_session WHERE id = %s FOR UPDATE", (session_id,)
        ).fetchone()
        return self._session_from_row(row) if row else None

    # -- users ---------------------------------------------------------------

    def create_user(self, user: User, password_hash: str) -> User:
        email = user.email.lower()
        username = user.username.lower()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (
                        id, username, email, first_name, last_name, is_active,
                        is_email_verified, is_admin, password_changed_at,
                        max_concurrent_sessions, active_sessions, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user.id,
                        username,
                        email,
                        user.first_name,
                        user.last_name,
                        user.is_active,
                        user.is_email_verified,
                        user.is_admin,
                        user.password_changed_at,
                        user.max_concurrent_sessions,
                        list(user.active_sessions),
                        user.created_at,
                        user.updated_at,
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                    VALUES (%s, %s, 'argon2id')
                    """,
                    (user.id, password_hash),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field, message = _UNIQUE_FIELD_MESSAGES.get(
                constraint, ("id", "user already exists")
            )
            raise ConstraintViolation(message, {"field": field}) from exc
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.lower(),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def find_user_by_email_or_username(
        self, email: str, username: str
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM app_user
                WHERE email = %s OR username = %s
                ORDER BY (email = %s) DESC
                LIMIT 1
                """,
                (email.lower(), username.lower(), email.lower()),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM app_user ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [self._user_from_row(r) for r in rows]

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return row["password_hash"] if row else None

    def update_password(
        self, user_id: str, password_hash: str, now: datetime
    ) -> Optional[User]:
        with self._connect() as conn:
            user = self._lock_user(conn, user_id)
            if not user:
                return None
            conn.execute(
                """
                UPDATE user_auth_credential
                SET password_hash = %s, password_algo = 'argon2id', updated_at = %s
                WHERE user_id = %s
                """,
                (password_hash, now, user_id),
            )
            user.set_password_changed(now)
            self._write_user_state(conn, user)
        return user

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_duration: timedelta,
        now: datetime,
    ) -> Optional[User]:
        with self._connect() as conn:
            user = self._lock_user(conn, user_id)
            if not user:
                return None
            user.register_failed_login(
                max_attempts=max_attempts, lock_duration=lock_duration, now=now
            )
            self._write_user_state(conn, user)
        return user

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            user = self._lock_user(conn, user_id)
            if not user:
                return None
            user.register_successful_login(now)
            self._write_user_state(conn, user)
        return user

    def set_user_admin(self, user_id: str, is_admin: bool) -> Optional[User]:
        with self._connect() as conn:
            user = self._lock_user(conn, user_id)
            if not user:
                return None
            user.is_admin = is_admin
            self._write_user_state(conn, user)
        return user

    def set_user_active(self, user_id: str, is_active: bool) -> Optional[User]:
        with self._connect() as conn:
            user = self._lock_user(conn, user_id)
            if not user:
                return None
            user.is_active = is_active
            self._write_user_state(conn, user)
        return user

    def add_active_session(self, user_id: str, session_id: str) -> None:
        with self._connect() as conn:
            user = self._lock_user(conn, user_id)
            if not user:
                return
            user.add_session(session_id)
            self._write_user_state(conn, user)

    def remove_active_session(self, user_id: str, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE app_user SET active_sessions = array_remove(active_sessions, %s)
                WHERE id = %s
                """,
                (session_id, user_id),
            )

    def replace_active_sessions(self, user_id: str, session_ids: Iterable[str]) -> None:
        with self._connect() as conn:
            user = self._lock_user(conn, user_id)
            if not user:
                return
            user.active_sessions = []
            for session_id in session_ids:
                user.add_session(session_id)
            self._write_user_state(conn, user)

    # -- sessions ------------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (
                        id, user_id, token_family, refresh_token_hash, device_info,
                        is_active, login_method, risk_score, metadata, expires_at,
                        created_at, updated_at, last_accessed_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.token_family,
                        session.refresh_token_hash,
                        json.dumps(session.device_info.to_dict()),
                        session.is_active,
                        session.login_method,
                        session.risk_score,
                        json.dumps(session.metadata),
                        session.expires_at,
                        session.created_at,
                        session.updated_at,
                        session.last_accessed_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            ) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("session id already exists", {"field": "id"}) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def find_session_for_refresh(
        self, session_id: str, refresh_token_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE id = %s AND refresh_token_hash = %s AND is_active AND expires_at > %s
                """,
                (session_id, refresh_token_hash, now),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_active_sessions(self, user_id: str, now: datetime) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND is_active AND expires_at > %s
                ORDER BY last_accessed_at DESC
                """,
                (user_id, now),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def rotate_refresh_token(
        self, session_id: str, expected_hash: str, new_hash: str, now: datetime
    ) -> Optional[Session]:
        """Swap the stored refresh hash only if it still equals ``expected_hash``."""
        with self._connect() as conn:
            sess = self._lock_session(conn, session_id)
            if (
                not sess
                or sess.refresh_token_hash != expected_hash
                or not sess.is_usable(now)
            ):
                return None
            sess.rotate(new_hash, now)
            self._write_session_state(conn, sess)
        return sess

    def set_refresh_token_hash(
        self, session_id: str, new_hash: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            sess = self._lock_session(conn, session_id)
            if not sess or not sess.is_usable(now):
                return None
            sess.rotate(new_hash, now)
            self._write_session_state(conn, sess)
        return sess

    def touch_session(self, session_id: str, now: datetime) -> Optional[Session]:
        with self._connect() as conn:
            sess = self._lock_session(conn, session_id)
            if not sess or not sess.is_active:
                return None
            sess.touch(now)
            self._write_session_state(conn, sess)
        return sess

    def deactivate_session(self, session_id: str, reason: str, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session
                SET is_active = FALSE, updated_at = %s,
                    metadata = metadata || jsonb_build_object(
                        'deactivationReason', %s::text, 'deactivatedAt', %s::text)
                WHERE id = %s AND is_active
                """,
                (now, reason, now.isoformat(), session_id),
            )
            return cur.rowcount > 0

    def deactivate_user_sessions(
        self,
        user_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE auth_session
                SET is_active = FALSE, updated_at = %s,
                    metadata = metadata || jsonb_build_object(
                        'deactivationReason', %s::text, 'deactivatedAt', %s::text)
                WHERE user_id = %s AND is_active AND id IS DISTINCT FROM %s
                """,
                (now, reason, now.isoformat(), user_id, except_session_id),
            )
            return cur.rowcount

    def detect_reuse(
        self, token_family: str, current_session_id: str, now: datetime
    ) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT 1 AS hit FROM auth_session
                WHERE token_family = %s AND is_active AND id <> %s
                LIMIT 1
                """,
                (token_family, current_session_id),
            ).fetchone()
            if not row:
                return False
            self._revoke_family(conn, token_family, now)
        return True

    def revoke_token_family(self, token_family: str, now: datetime) -> int:
        with self._connect() as conn:
            return self._revoke_family(conn, token_family, now)

    def _revoke_family(self, conn, token_family: str, now: datetime) -> int:
        rows = conn.execute(
            "SELECT * FROM auth_session WHERE token_family = %s AND is_active FOR UPDATE",
            (token_family,),
        ).fetchall()
        for row in rows:
            sess = self._session_from_row(row)
            sess.mark_breached(now)
            self._write_session_state(conn, sess)
        return len(rows)

    def cleanup_expired_sessions(self, now: datetime, retention: timedelta) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                DELETE FROM auth_session
                WHERE expires_at <= %s OR (NOT is_active AND updated_at < %s)
                """,
                (now, now - retention),
            )
            return cur.rowcount
