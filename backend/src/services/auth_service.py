"""Bearer token verification for the chat API.

Sessions are issued by an external provider that signs HS256 tokens with a
shared secret. This service only verifies them.
"""

import os

from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError


class AuthenticationError(Exception):
    """Authentication error."""

    pass


class AuthService:
    """Verifies the session provider's access tokens."""

    JWT_ALGORITHM = "HS256"
    ANONYMOUS_ROLE = "anon"

    def __init__(self, jwt_secret: str | None = None, audience: str | None = None):
        """Initialize auth service.

        Args:
            jwt_secret: Shared secret the session provider signs tokens with
            audience: Required ``aud`` claim. Unchecked when unset.
        """
        self.jwt_secret = jwt_secret or os.environ.get(
            "JWT_SECRET_KEY", "dev-secret-change-in-prod"
        )
        self.audience = audience or os.environ.get("JWT_AUDIENCE") or None

    def verify_access_token(self, token: str) -> str:
        """Resolve a bearer token to the chat user it speaks for.

        The ``sub`` claim is the user id every request body is checked
        against. Refresh tokens and the provider's anonymous key are signed
        with the same secret but never identify a user, so both are refused.

        Raises:
            AuthenticationError: If the token is expired, forged, or not a
                user access token
        """
        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=[self.JWT_ALGORITHM],
                audience=self.audience,
                options={"verify_exp": True, "verify_aud": self.audience is not None},
            )
        except ExpiredSignatureError:
            raise AuthenticationError("Token has expired")
        except JWTError as e:
            raise AuthenticationError(f"Invalid token: {str(e)}")

        # jose passes tokens that carry no aud claim at all
        if self.audience and "aud" not in payload:
            raise AuthenticationError("Invalid token: missing audience")
        if payload.get("type", "access") != "access":
            raise AuthenticationError("Invalid token type")
        if payload.get("role") == self.ANONYMOUS_ROLE:
            raise AuthenticationError("Anonymous tokens cannot act as a user")

        user_id = payload.get("sub")
        if not user_id:
            raise AuthenticationError("Missing user ID in token")
        return user_id
