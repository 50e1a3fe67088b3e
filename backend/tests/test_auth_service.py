"""Tests for AuthService."""

from datetime import UTC, datetime, timedelta

import pytest
from conftest import TEST_JWT_SECRET, create_token
from jose import jwt

from services.auth_service import AuthenticationError, AuthService


class TestAuthService:
    """Test cases for AuthService."""

    @pytest.fixture
    def auth_service(self):
        return AuthService(jwt_secret=TEST_JWT_SECRET)

    def _encode(self, **overrides):
        payload = {
            "sub": "test-user-123",
            "type": "access",
            "iat": datetime.now(UTC),
            "exp": datetime.now(UTC) + timedelta(hours=1),
        }
        payload.update(overrides)
        return jwt.encode(
            {k: v for k, v in payload.items() if v is not None},
            TEST_JWT_SECRET,
            algorithm="HS256",
        )

    def test_verify_access_token_success(self, auth_service):
        """Test successful access token verification."""
        assert auth_service.verify_access_token(create_token("bob")) == "bob"

    def test_verify_access_token_expired(self, auth_service):
        """Test expired access token rejection."""
        expired_token = self._encode(
            iat=datetime.now(UTC) - timedelta(days=10),
            exp=datetime.now(UTC) - timedelta(days=1),
        )
        with pytest.raises(AuthenticationError, match="expired"):
            auth_service.verify_access_token(expired_token)

    def test_verify_access_token_invalid(self, auth_service):
        """Test invalid access token rejection."""
        with pytest.raises(AuthenticationError, match="Invalid token"):
            auth_service.verify_access_token("not-a-valid-token")

    def test_verify_access_token_wrong_type(self, auth_service):
        """Test refresh token rejected as access token."""
        with pytest.raises(AuthenticationError, match="Invalid token type"):
            auth_service.verify_access_token(self._encode(type="refresh"))

    def test_token_without_type_is_access(self, auth_service):
        assert auth_service.verify_access_token(self._encode(type=None)) == "test-user-123"

    def test_missing_subject(self, auth_service):
        with pytest.raises(AuthenticationError, match="Missing user ID"):
            auth_service.verify_access_token(self._encode(sub=None))

    def test_verify_access_token_wrong_secret(self, auth_service):
        """Test token with wrong secret is rejected."""
        with pytest.raises(AuthenticationError):
            auth_service.verify_access_token(create_token("bob", secret="wrong-secret"))

    def test_secret_defaults_to_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_SECRET_KEY", TEST_JWT_SECRET)
        assert AuthService().verify_access_token(create_token("carol")) == "carol"

    def test_anonymous_role_rejected(self, auth_service):
        with pytest.raises(AuthenticationError, match="Anonymous"):
            auth_service.verify_access_token(self._encode(role="anon"))

    def test_authenticated_role_accepted(self, auth_service):
        token = self._encode(role="authenticated", aud="authenticated")
        assert auth_service.verify_access_token(token) == "test-user-123"

    def test_audience_enforced_when_configured(self):
        service = AuthService(jwt_secret=TEST_JWT_SECRET, audience="authenticated")
        assert service.verify_access_token(self._encode(aud="authenticated")) == "test-user-123"
        with pytest.raises(AuthenticationError, match="Invalid token"):
            service.verify_access_token(self._encode(aud="some-other-app"))
        with pytest.raises(AuthenticationError, match="Invalid token"):
            service.verify_access_token(self._encode())

    def test_audience_from_environment(self, monkeypatch):
        monkeypatch.setenv("JWT_AUDIENCE", "authenticated")
        service = AuthService(jwt_secret=TEST_JWT_SECRET)
        assert service.audience == "authenticated"
