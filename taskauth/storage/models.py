from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

SUSPICIOUS_RISK_THRESHOLD = 70
MAX_RISK_SCORE = 100
PASSWORD_CHANGE_SKEW = timedelta(seconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive timestamps (legacy snapshots, some drivers) as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class DeviceInfo:
    user_agent: str = "Unknown"
    ip: str = "Unknown"
    fingerprint: Optional[str] = None
    location: str = "Unknown"

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "userAgent": self.user_agent,
            "ip": self.ip,
            "fingerprint": self.fingerprint,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DeviceInfo":
        data = data or {}
        return cls(
            user_agent=data.get("userAgent") or "Unknown",
            ip=data.get("ip") or "Unknown",
            fingerprint=data.get("fingerprint"),
            location=data.get("location") or "Unknown",
        )


@dataclass
class User:
    id: str
    username: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_active: bool = True
    is_email_verified: bool = False
    is_admin: bool = False
    failed_login_attempts: int = 0
    account_locked_until: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    max_concurrent_sessions: int = 5
    active_sessions: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        username: str,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        max_concurrent_sessions: int = 5,
        is_admin: bool = False,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username,
            email=email,
            first_name=first_name,
            last_name=last_name,
            is_admin=is_admin,
            max_concurrent_sessions=max_concurrent_sessions,
            password_changed_at=now,
            created_at=now,
            updated_at=now,
        )

    @property
    def full_name(self) -> Optional[str]:
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) if parts else None

    def is_locked(self, now: Optional[datetime] = None) -> bool:
        if self.account_locked_until is None:
            return False
        return as_utc(self.account_locked_until) > (now or utcnow())

    def changed_password_after(self, issued_at: int | float) -> bool:
        """Return True when a token issued at ``issued_at`` predates the last password change.

        ``password_changed_at`` is recorded one second in the past when a
        password changes, so tokens minted for the session that performed the
        change in the same second remain valid.
        """
        if self.password_changed_at is None:
            return False
        changed_ts = int(as_utc(self.password_changed_at).timestamp())
        return int(issued_at) < changed_ts

    def register_failed_login(
        self, *, max_attempts: int, lock_duration: timedelta, now: datetime
    ) -> None:
        if self.account_locked_until is not None and not self.is_locked(now):
            # Lock has lapsed: this failure starts a fresh count
            self.failed_login_attempts = 1
            self.account_locked_until = None
        else:
            self.failed_login_attempts += 1
            if self.failed_login_attempts >= max_attempts and not self.is_locked(now):
                self.account_locked_until = now + lock_duration
        self.updated_at = now

    def register_successful_login(self, now: datetime) -> None:
        self.failed_login_attempts = 0
        self.account_locked_until = None
        self.last_login = now
        self.updated_at = now

    def set_password_changed(self, now: datetime) -> None:
        self.password_changed_at = now - PASSWORD_CHANGE_SKEW
        self.updated_at = now

    def add_session(self, session_id: str) -> None:
        if session_id in self.active_sessions:
            self.active_sessions.remove(session_id)
        self.active_sessions.append(session_id)
        overflow = len(self.active_sessions) - max(self.max_concurrent_sessions, 1)
        if overflow > 0:
            del self.active_sessions[:overflow]


@dataclass
class Session:
    id: str
    user_id: str
    token_family: str
    expires_at: datetime
    refresh_token_hash: str = ""
    device_info: DeviceInfo = field(default_factory=DeviceInfo)
    is_active: bool = True
    login_method: str = "password"
    risk_score: int = 0
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_accessed_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl: timedelta,
        device_info: Optional[DeviceInfo] = None,
        *,
        login_method: str = "password",
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        sess = cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_family=str(uuid.uuid4()),
            expires_at=now + ttl,
            device_info=device_info or DeviceInfo(),
            login_method=login_method,
            created_at=now,
            updated_at=now,
            last_accessed_at=now,
        )
        sess.risk_score = compute_risk_score(sess, now)
        return sess

    @property
    def is_suspicious(self) -> bool:
        return self.risk_score > SUSPICIOUS_RISK_THRESHOLD

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    @property
    def deactivation_reason(self) -> Optional[str]:
        return self.metadata.get("deactivationReason")

    def touch(self, now: datetime) -> None:
        # Idle gap is measured from the previous access
        self.risk_score = compute_risk_score(self, now)
        self.last_accessed_at = now
        self.updated_at = now

    def rotate(self, new_hash: str, now: datetime) -> None:
        self.refresh_token_hash = new_hash
        self.touch(now)

    def deactivate(self, reason: str, now: datetime) -> bool:
        """Mark the session inactive; returns False if it already was."""
        if not self.is_active:
            return False
        self.is_active = False
        self.metadata["deactivationReason"] = reason
        self.metadata["deactivatedAt"] = now.isoformat()
        self.updated_at = now
        return True

    def mark_breached(self, now: datetime) -> None:
        self.deactivate("token_reuse_detected", now)
        self.risk_score = MAX_RISK_SCORE
        self.metadata["securityBreach"] = "token_reuse_detected"
        self.metadata["breachDetectedAt"] = now.isoformat()
        self.updated_at = now


def compute_risk_score(session: Session, now: Optional[datetime] = None) -> int:
    """Advisory 0-100 score from session age, idle gap and fingerprint presence."""
    now = now or utcnow()
    score = 0

    age = now - as_utc(session.created_at)
    if age > timedelta(weeks=1):
        score += 20
    elif age > timedelta(days=1):
        score += 10

    idle = now - as_utc(session.last_accessed_at)
    if idle > timedelta(days=1):
        score += 15
    elif idle > timedelta(hours=6):
        score += 5

    if not session.device_info.fingerprint:
        score += 10

    return min(score, MAX_RISK_SCORE)
