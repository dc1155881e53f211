"""Tests for access/refresh token issuance and verification."""

from datetime import timedelta

import jwt
import pytest

from taskauth.config import Settings
from taskauth.service.tokens import ACCESS, REFRESH, TokenCodec, TokenExpired, TokenInvalid
from taskauth.storage.models import utcnow

ACCESS_CLAIMS = {
    "userId": "user-1",
    "sessionId": "session-1",
    "username": "alice",
    "email": "alice@x.com",
}
REFRESH_CLAIMS = {"userId": "user-1", "sessionId": "session-1", "tokenFamily": "family-1"}


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="access-secret-used-only-by-the-token-tests-0123456789",
        jwt_refresh_secret="refresh-secret-used-only-by-the-token-tests-0123456789",
        access_token_ttl_minutes=30,
    )


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


class TestIssueAndVerify:
    """Round trips for each token kind."""

    def test_access_token_claims(self, codec):
        token = codec.issue_access(ACCESS_CLAIMS)
        claims = codec.verify(token, ACCESS)
        assert claims["userId"] == "user-1"
        assert claims["sessionId"] == "session-1"
        assert claims["iss"] == "task-manager-api"
        assert claims["aud"] == "task-manager-client"
        assert "type" not in claims
        assert claims["exp"] - claims["iat"] == 30 * 60

    def test_refresh_token_carries_type(self, codec):
        token = codec.issue_refresh(REFRESH_CLAIMS)
        claims = codec.verify(token, REFRESH)
        assert claims["type"] == "refresh"
        assert claims["tokenFamily"] == "family-1"
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_remember_me_extends_refresh_lifetime(self, codec):
        claims = codec.verify(codec.issue_refresh(REFRESH_CLAIMS, remember_me=True), REFRESH)
        assert claims["exp"] - claims["iat"] == 30 * 24 * 3600

    def test_explicit_ttl_wins(self, codec):
        claims = codec.verify(
            codec.issue_refresh(REFRESH_CLAIMS, ttl=timedelta(hours=2)), REFRESH
        )
        assert claims["exp"] - claims["iat"] == 2 * 3600

    def test_tokens_in_same_second_differ(self, codec):
        """jti keeps tokens unique even when every other claim matches."""
        now = utcnow()
        first = codec.issue_refresh(REFRESH_CLAIMS, now=now)
        second = codec.issue_refresh(REFRESH_CLAIMS, now=now)
        assert first != second
        assert codec.hash_token(first) != codec.hash_token(second)

    def test_missing_claims_rejected_at_issue(self, codec):
        with pytest.raises(ValueError):
            codec.issue_access({"userId": "user-1"})

    def test_expires_in_label(self, codec):
        assert codec.expires_in == "30m"


class TestRejection:
    """Everything that must not verify."""

    def test_refresh_token_not_accepted_as_access(self, codec):
        token = codec.issue_refresh(REFRESH_CLAIMS)
        with pytest.raises(TokenInvalid):
            codec.verify(token, ACCESS)

    def test_access_token_not_accepted_as_refresh(self, codec):
        token = codec.issue_access(ACCESS_CLAIMS)
        with pytest.raises(TokenInvalid):
            codec.verify(token, REFRESH)

    def test_refresh_secret_without_type_rejected(self, codec, settings):
        """A token signed with the refresh secret still needs the type discriminator."""
        now = int(utcnow().timestamp())
        token = jwt.encode(
            {
                **REFRESH_CLAIMS,
                "iat": now,
                "exp": now + 600,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
            },
            settings.jwt_refresh_secret,
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalid):
            codec.verify(token, REFRESH)

    def test_expired_token(self, codec):
        issued = utcnow() - timedelta(hours=1)
        token = codec.issue_access(ACCESS_CLAIMS, now=issued)
        with pytest.raises(TokenExpired):
            codec.verify(token, ACCESS)

    def test_foreign_signature(self, codec, settings):
        now = int(utcnow().timestamp())
        token = jwt.encode(
            {
                **ACCESS_CLAIMS,
                "iat": now,
                "exp": now + 600,
                "iss": settings.jwt_issuer,
                "aud": settings.jwt_audience,
            },
            "some-other-secret-that-is-long-enough-for-hs256-keys",
            algorithm="HS256",
        )
        with pytest.raises(TokenInvalid):
            codec.verify(token, ACCESS)

    def test_wrong_audience(self, codec, settings):
        other = TokenCodec(settings.model_copy(update={"jwt_audience": "someone-else"}))
        with pytest.raises(TokenInvalid):
            codec.verify(other.issue_access(ACCESS_CLAIMS), ACCESS)

    def test_garbage_and_empty(self, codec):
        with pytest.raises(TokenInvalid):
            codec.verify("not-a-jwt", ACCESS)
        with pytest.raises(TokenInvalid):
            codec.verify("", REFRESH)

    def test_unknown_kind(self, codec):
        with pytest.raises(ValueError):
            codec.verify("x", "id")
