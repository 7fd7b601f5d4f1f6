"""Verification of caller identity tokens"""
import logging
from typing import Optional

import jwt

from playledger.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

class JwtIdentityVerifier:
    """
    Resolves the calling user from an HS256 bearer token.

    Tokens are issued by the identity provider; only the signature, expiry,
    audience and subject are checked here.
    """

    def __init__(self, secret: Optional[str], audience: Optional[str] = 'authenticated'):
        self.secret = secret
        self.audience = audience

    def verify(self, token: Optional[str]) -> str:
        """Return the user id carried in a valid token"""
        if not token:
            raise AuthenticationError("No ID token.")
        if not self.secret:
            logger.warning("JWT_SECRET not configured, cannot validate identity tokens")
            raise AuthenticationError("Identity verification is not configured.")

        try:
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=['HS256'],
                audience=self.audience,
                options={'require': ['sub', 'exp']}
            )
        except jwt.ExpiredSignatureError as e:
            logger.warning("Identity token has expired")
            raise AuthenticationError("Expired ID token.") from e
        except jwt.InvalidTokenError as e:
            logger.warning(f"Invalid identity token: {type(e).__name__}")
            raise AuthenticationError("Invalid ID token.") from e

        subject = payload.get('sub')
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("Invalid ID token.")
        return subject

    def verify_header(self, authorization: Optional[str]) -> str:
        """Verify an 'Authorization: Bearer <token>' header value"""
        if not authorization:
            raise AuthenticationError("No ID token.")
        scheme, _, token = authorization.partition(' ')
        if scheme.lower() != 'bearer' or not token.strip():
            raise AuthenticationError("Invalid authorization header format.")
        return self.verify(token.strip())
