"""Session credentials: issuing and verifying signed bearer tokens.

This layer only establishes *who* the caller is.  Whether that caller may
touch a given gig or home is decided by the services.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from errors import AuthenticationError
from settings import DEFAULT_SECRET_KEY, Settings

logger = logging.getLogger("oodoo.security")

VERIFY_EMAIL_PURPOSE = "verify-email"


class Authenticator:
    def __init__(self, settings: Settings):
        self.secret_key = settings.secret_key
        self.algorithm = settings.algorithm
        self.expire_minutes = settings.access_token_expire_minutes
        if self.secret_key == DEFAULT_SECRET_KEY:
            logger.warning("SECRET_KEY not set; signing tokens with the development key")

    def create_access_token(self, user_id: str, claims: Optional[dict] = None,
                            expires_minutes: Optional[int] = None) -> str:
        to_encode = dict(claims or {})
        expire = datetime.now(timezone.utc) + timedelta(minutes=expires_minutes or self.expire_minutes)
        to_encode.update({"sub": user_id, "exp": expire})
        return jwt.encode(to_encode, self.secret_key, algorithm=self.algorithm)

    def decode(self, token: str) -> dict:
        try:
            return jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError:
            raise AuthenticationError("Invalid token", status_code=403)

    def authenticate(self, token: Optional[str]) -> str:
        """Return the user id carried by ``token``."""
        if not token:
            raise AuthenticationError("No token provided")
        payload = self.decode(token)
        if payload.get("purpose"):
            # single-purpose tokens (e-mail verification) are not sessions
            raise AuthenticationError("Invalid token", status_code=403)
        user_id = payload.get("sub")
        if not user_id or not isinstance(user_id, str):
            raise AuthenticationError("User ID missing in token payload", status_code=403)
        return user_id

    @staticmethod
    def bearer_token(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    def create_verification_token(self, user_id: str) -> str:
        return self.create_access_token(user_id, {"purpose": VERIFY_EMAIL_PURPOSE}, expires_minutes=60 * 24)

    def read_verification_token(self, token: str) -> str:
        payload = self.decode(token)
        if payload.get("purpose") != VERIFY_EMAIL_PURPOSE or not payload.get("sub"):
            raise AuthenticationError("Invalid verification link", status_code=403)
        return payload["sub"]
