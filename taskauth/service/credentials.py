from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from taskauth.config import Settings
from taskauth.logging import get_logger
from taskauth.service.errors import (
    AccountDeactivatedError,
    AccountLockedError,
    InvalidCredentialsError,
    InvalidCurrentPasswordError,
    UserExistsError,
    UserNotFoundError,
)
from taskauth.storage.errors import ConstraintViolation
from taskauth.storage.models import User, utcnow

logger = get_logger(__name__)

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


class CredentialService:
    """Password hashing, registration uniqueness and the failed-login policy."""

    def __init__(self, store, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            type=Type.ID,
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
        )
        self.max_attempts = settings.max_login_attempts
        self.lock_duration = timedelta(minutes=settings.lock_duration_minutes)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check(self, stored_hash: str, candidate: str) -> bool:
        try:
            return self._pwd_hasher.verify(stored_hash, candidate)
        except (InvalidHash, VerificationError):
            return False

    def verify_password(self, user_id: str, candidate: str) -> bool:
        """Verify ``candidate`` against the stored argon2id hash for ``user_id``."""
        stored_hash = self.store.get_password_hash(user_id)
        if not stored_hash:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        return self._check(stored_hash, candidate)

    def _burn_dummy_verify(self, candidate: str) -> None:
        # Unknown accounts pay the same argon2 cost as known ones
        if self._dummy_hash is None:
            self._dummy_hash = self.hash_password("dummy-password-for-timing")
        self._check(self._dummy_hash, candidate)

    def find_by_email_or_username(self, email: str, username: str) -> Optional[User]:
        return self.store.find_user_by_email_or_username(email, username)

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        is_admin: bool = False,
    ) -> User:
        email = email.strip().lower()
        username = username.strip().lower()
        existing = self.find_by_email_or_username(email, username)
        if existing:
            if existing.email == email:
                raise UserExistsError(
                    "Email is already registered", detail={"field": "email"}
                )
            raise UserExistsError("Username is already taken", detail={"field": "username"})
        user = User.new(
            username,
            email,
            first_name=first_name,
            last_name=last_name,
            max_concurrent_sessions=self.settings.max_concurrent_sessions,
            is_admin=is_admin,
        )
        try:
            created = self.store.create_user(user, self.hash_password(password))
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration
            raise UserExistsError(exc.message, detail=exc.detail) from exc
        self.logger.info("user_registered", user_id=created.id, username=created.username)
        return created

    def authenticate(
        self, email: str, password: str, now: Optional[datetime] = None
    ) -> User:
        """Return the user for a correct email/password pair or raise.

        Wrong passwords are counted atomically in the store. The attempt that
        reaches ``max_login_attempts`` already answers with ``AccountLockedError``.
        """
        now = now or utcnow()
        user = self.store.get_user_by_email(email.strip().lower())
        if not user:
            self._burn_dummy_verify(password)
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)
        if user.is_locked(now):
            self.logger.warning("login_rejected_locked", user_id=user.id)
            raise self._locked_error(user)
        if not user.is_active:
            self.logger.warning("login_rejected_deactivated", user_id=user.id)
            raise AccountDeactivatedError("Account has been deactivated")

        if not self.verify_password(user.id, password):
            updated = self.store.record_failed_login(
                user.id,
                max_attempts=self.max_attempts,
                lock_duration=self.lock_duration,
                now=now,
            )
            if updated and updated.is_locked(now):
                self.logger.warning(
                    "account_locked",
                    user_id=user.id,
                    failed_login_attempts=updated.failed_login_attempts,
                    locked_until=updated.account_locked_until.isoformat(),
                )
                raise self._locked_error(updated)
            self.logger.info(
                "login_failed",
                user_id=user.id,
                failed_login_attempts=updated.failed_login_attempts if updated else None,
            )
            raise InvalidCredentialsError(INVALID_CREDENTIALS_MESSAGE)

        return self.store.record_successful_login(user.id, now) or user

    @staticmethod
    def _locked_error(user: User) -> AccountLockedError:
        locked_until = user.account_locked_until.isoformat() if user.account_locked_until else None
        return AccountLockedError(
            "Account is temporarily locked due to too many failed login attempts",
            detail={"lockedUntil": locked_until},
        )

    def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        now: Optional[datetime] = None,
    ) -> User:
        if not self.verify_password(user_id, current_password):
            raise InvalidCurrentPasswordError("Current password is incorrect")
        updated = self.store.update_password(
            user_id, self.hash_password(new_password), now or utcnow()
        )
        if not updated:
            raise UserNotFoundError("User no longer exists")
        self.logger.info("password_changed", user_id=user_id)
        return updated
