# sayso/auth.py

import logging
import time
from typing import Any, Dict, Optional, Tuple

import bcrypt
import jwt

from .db_async import Database

logger = logging.getLogger(__name__)


def hash_password(password: str) -> str:
    """
    Hashes a password using bcrypt.
    Returns the hashed password as a UTF-8 string suitable for storing in the DB.
    """
    password_bytes = password.encode('utf-8')
    salt = bcrypt.gensalt()
    hashed_bytes = bcrypt.hashpw(password_bytes, salt)
    return hashed_bytes.decode('utf-8')


def check_password(password: str, hashed_password: str) -> bool:
    """
    Checks if a plain-text password matches a stored hash.
    """
    password_bytes = password.encode('utf-8')
    hashed_password_bytes = hashed_password.encode('utf-8')
    try:
        return bcrypt.checkpw(password_bytes, hashed_password_bytes)
    except ValueError:
        # Not a bcrypt hash at all.
        return False


class Authenticator:
    """
    Handles user authentication by checking credentials against the database.
    Uses email as the unique identifier for users.
    """
    USER_NOT_FOUND = "User not found"
    INCORRECT_PASSWORD = "Incorrect password"

    def __init__(self, db: Database):
        self.db = db
        logger.info("Authenticator initialized.")

    async def authenticate(self, email: str, password: str) -> Tuple[Optional[dict], Optional[str]]:
        """
        Authenticates a user by email and password.

        Args:
            email: The user's email.
            password: The user's plain-text password.

        Returns:
            (user_data, None) on success, otherwise (None, reason) where reason
            is a message suitable for the client.
        """
        normalized_email = email.strip().lower()
        logger.info(f"Attempting to authenticate user with email '{normalized_email}'...")
        user_row = await self.db.get_user_by_email(normalized_email)

        if not user_row:
            logger.info(f"Authentication failed: User with email '{normalized_email}' not found.")
            return None, self.USER_NOT_FOUND

        if check_password(password, user_row['password']):
            logger.info(f"Authentication successful for user '{normalized_email}'.")
            return dict(user_row), None

        logger.info(f"Authentication failed: Invalid password for user '{normalized_email}'.")
        return None, self.INCORRECT_PASSWORD


class InvalidToken(Exception):
    """Raised when a bearer token is malformed, forged or expired."""


class TokenSigner:
    """
    Issues and verifies stateless bearer tokens: HS256 JWTs holding the
    user ID (``sub``) and the expiry as unix seconds (``exp``).
    """
    ALGORITHM = "HS256"

    def __init__(self, secret: str, ttl_seconds: int):
        self._secret = secret
        self.ttl_seconds = ttl_seconds

    def issue(self, user_id: str, now: Optional[float] = None) -> str:
        issued_at = int(time.time() if now is None else now)
        claims = {"sub": user_id, "exp": issued_at + self.ttl_seconds}
        return jwt.encode(claims, self._secret, algorithm=self.ALGORITHM)

    def verify(self, token: Any) -> Dict[str, Any]:
        """Returns the token's claims or raises InvalidToken."""
        if not isinstance(token, str) or not token:
            raise InvalidToken("Invalid token")
        try:
            claims = jwt.decode(
                token, self._secret, algorithms=[self.ALGORITHM],
                options={"require": ["sub", "exp"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidToken("Token expired") from e
        except jwt.InvalidTokenError as e:
            raise InvalidToken("Invalid token") from e

        if not isinstance(claims.get("sub"), str):
            raise InvalidToken("Invalid token")
        return claims
