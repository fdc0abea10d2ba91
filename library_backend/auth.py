"""Password hashing, bearer tokens and role checks.

Tokens are random strings handed to the client once; only their SHA-256
digest is stored, so a leaked database does not leak usable sessions.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta
from typing import Callable, Optional

from .config import Settings
from .database import Database
from .errors import AuthenticationError, NotFound, ValidationError
from .models import Role, User, from_iso
from .store import EntityStore

logger = logging.getLogger(__name__)

SESSION_TOKEN = "session"
RESET_TOKEN = "password_reset"
_HASH_ALGORITHM = "pbkdf2_sha256"


def hash_password(password: str, iterations: int = 120000) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), iterations)
    return f"{_HASH_ALGORITHM}${iterations}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        algorithm, iterations, salt, expected = encoded.split("$", 3)
        rounds = int(iterations)
    except (AttributeError, ValueError):
        return False
    if algorithm != _HASH_ALGORITHM:
        return False
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("ascii"), rounds)
    return hmac.compare_digest(digest.hex(), expected)


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class IdentityProvider:
    def __init__(self, db: Database, store: EntityStore, config: Settings, clock: Callable) -> None:
        self.db = db
        self.store = store
        self.config = config
        self.clock = clock

    def hash_password(self, password: str) -> str:
        return hash_password(password, self.config.password_hash_iterations)

    def issue_token(self, conn, user_id: int, kind: str = SESSION_TOKEN) -> str:
        """Create a token for the user inside the caller's transaction."""
        now = self.clock()
        minutes = (
            self.config.password_reset_expiration_minutes
            if kind == RESET_TOKEN
            else self.config.token_expiration_minutes
        )
        self.store.delete_expired_tokens(conn, now)
        token = secrets.token_urlsafe(32)
        self.store.insert_token(conn, _digest(token), user_id, kind, now, now + timedelta(minutes=minutes))
        return token

    def authenticate(self, token: Optional[str]) -> User:
        """Resolve a session token to its active user."""
        if not token:
            raise AuthenticationError()
        with self.db.session() as conn:
            row = self.store.get_token(conn, _digest(token), SESSION_TOKEN)
            if row is None or from_iso(row["expires_at"]) <= self.clock():
                raise AuthenticationError()
            user = self.store.get_user(conn, row["user_id"])
        if user is None or not user.is_active:
            raise AuthenticationError()
        return user

    @staticmethod
    def authorize(user: User, required_role: Role) -> bool:
        return user.role.rank >= Role(required_role).rank

    def revoke(self, token: str) -> bool:
        with self.db.transaction() as conn:
            return self.store.delete_token(conn, _digest(token))

    def revoke_all(self, user_id: int) -> int:
        with self.db.transaction() as conn:
            count = self.store.delete_user_tokens(conn, user_id, SESSION_TOKEN)
        logger.info(f"Revoked {count} session(s) for user {user_id}")
        return count

    def consume_reset_token(self, conn, token: str) -> User:
        """Validate and burn a password reset token inside the caller's transaction."""
        if not token:
            raise ValidationError("Reset token is required")
        row = self.store.get_token(conn, _digest(token), RESET_TOKEN)
        if row is None:
            raise AuthenticationError("Invalid or expired reset token")
        if from_iso(row["expires_at"]) <= self.clock():
            raise AuthenticationError("Invalid or expired reset token")
        self.store.delete_token(conn, row["token_hash"])
        user = self.store.get_user(conn, row["user_id"])
        if user is None:
            raise NotFound("User not found")
        return user
