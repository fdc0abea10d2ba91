"""User accounts: registration, sessions, profiles and password resets."""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from .auth import RESET_TOKEN, IdentityProvider, verify_password
from .config import Settings
from .database import Database
from .errors import AuthenticationError, EmailDeliveryError, InternalError, NotFound, ValidationError
from .models import SELF_SERVICE_ROLES, Role, User
from .store import EntityStore, ListQuery
from .validators import EmailValidator, TextValidator, validate_password

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "email", "password", "department", "contact_number", "address")
ADMIN_FIELDS = PROFILE_FIELDS + ("role", "student_id", "is_active")
ADDRESS_KEYS = ("street", "city", "state", "zip_code", "country")


class AccountService:
    def __init__(
        self,
        db: Database,
        store: EntityStore,
        identity: IdentityProvider,
        mailer: Any,
        config: Settings,
        clock: Callable,
    ) -> None:
        self.db = db
        self.store = store
        self.identity = identity
        self.mailer = mailer
        self.config = config
        self.clock = clock

    # ------------------------- Registration & sessions ------------------------- #
    def register(self, data: Dict[str, Any]) -> Tuple[User, str]:
        """Self-service sign-up. Returns the new user and a session token."""
        role = Role(data.get("role") or Role.STUDENT)
        if role not in SELF_SERVICE_ROLES:
            raise ValidationError(f"Role '{role.value}' cannot be chosen at registration")
        values = self._new_user_values(data, role)
        with self.db.transaction() as conn:
            user_id = self.store.insert_user(conn, values, self.clock())
            token = self.identity.issue_token(conn, user_id)
            user = self.store.get_user(conn, user_id)
        logger.info(f"Registered user {user.id} ({user.role.value})")

        try:
            self.mailer.send_welcome(user)
        except EmailDeliveryError as e:
            logger.error(f"Welcome email for user {user.id} failed: {e}")
        return user, token

    def create_user(self, data: Dict[str, Any]) -> User:
        """Operator-side account creation; any role is allowed."""
        role = Role(data.get("role") or Role.STUDENT)
        values = self._new_user_values(data, role)
        with self.db.transaction() as conn:
            user_id = self.store.insert_user(conn, values, self.clock())
            user = self.store.get_user(conn, user_id)
        logger.info(f"Created user {user.id} ({user.role.value})")
        return user

    def login(self, email: Optional[str], password: Optional[str]) -> Tuple[User, str]:
        email = EmailValidator.normalize_email(email)
        with self.db.transaction() as conn:
            user = self.store.get_user_by_email(conn, email)
            if (
                user is None
                or not user.is_active
                or not password
                or not verify_password(password, user.password_hash)
            ):
                raise AuthenticationError("Unable to login")
            token = self.identity.issue_token(conn, user.id)
        logger.info(f"User {user.id} logged in")
        return user, token

    def logout(self, token: str) -> None:
        self.identity.revoke(token)

    def logout_all(self, user: User) -> int:
        return self.identity.revoke_all(user.id)

    # ------------------------- Profiles ------------------------- #
    def get_user(self, user_id: int) -> User:
        with self.db.session() as conn:
            user = self.store.get_user(conn, user_id)
        if user is None:
            raise NotFound("User not found")
        return user

    def list_users(self, query: ListQuery) -> List[User]:
        with self.db.session() as conn:
            return self.store.list_users(conn, query)

    def update_profile(self, user: User, changes: Dict[str, Any]) -> User:
        return self._apply_changes(user.id, changes, PROFILE_FIELDS)

    def admin_update(self, user_id: int, changes: Dict[str, Any]) -> User:
        return self._apply_changes(user_id, changes, ADMIN_FIELDS)

    # ------------------------- Password reset ------------------------- #
    def request_password_reset(self, email: Optional[str]) -> None:
        email = EmailValidator.normalize_email(email)
        with self.db.transaction() as conn:
            user = self.store.get_user_by_email(conn, email)
            if user is None:
                raise NotFound("User not found")
            token = self.identity.issue_token(conn, user.id, kind=RESET_TOKEN)
        try:
            self.mailer.send_password_reset(user, token)
        except EmailDeliveryError as e:
            raise InternalError("Could not send reset email") from e
        logger.info(f"Password reset requested for user {user.id}")

    def reset_password(self, token: str, new_password: str) -> User:
        password = validate_password(new_password, self.config.password_min_length)
        now = self.clock()
        with self.db.transaction() as conn:
            user = self.identity.consume_reset_token(conn, token)
            self.store.update_user(conn, user.id, {"password_hash": self.identity.hash_password(password)}, now)
            self.store.delete_user_tokens(conn, user.id)
            user = self.store.get_user(conn, user.id)
        logger.info(f"Password reset completed for user {user.id}")
        return user

    # ------------------------- Helpers ------------------------- #
    def _new_user_values(self, data: Dict[str, Any], role: Role) -> Dict[str, Any]:
        email = EmailValidator.normalize_email(data.get("email"))
        if not EmailValidator.is_valid_email(email):
            raise ValidationError("Email is invalid")
        password = validate_password(data.get("password"), self.config.password_min_length)
        return {
            "name": TextValidator.require(data.get("name"), "Name"),
            "email": email,
            "password_hash": self.identity.hash_password(password),
            "role": role,
            "student_id": TextValidator.clean(data.get("student_id")),
            "department": TextValidator.clean(data.get("department")),
            "contact_number": TextValidator.clean(data.get("contact_number")),
            "address": self._merge_address({}, data.get("address")),
            "fines": 0.0,
            "is_active": True,
            "date_joined": self.clock(),
        }

    def _apply_changes(self, user_id: int, changes: Dict[str, Any], allowed: Tuple[str, ...]) -> User:
        if set(changes) - set(allowed):
            raise ValidationError("Invalid updates!")
        now = self.clock()
        with self.db.transaction() as conn:
            user = self.store.get_user(conn, user_id)
            if user is None:
                raise NotFound("User not found")
            values: Dict[str, Any] = {}
            for name, value in changes.items():
                if value is None and name in ("role", "is_active"):
                    raise ValidationError("Invalid updates!")
                if name == "password":
                    password = validate_password(value, self.config.password_min_length)
                    values["password_hash"] = self.identity.hash_password(password)
                elif name == "email":
                    email = EmailValidator.normalize_email(value)
                    if not EmailValidator.is_valid_email(email):
                        raise ValidationError("Email is invalid")
                    values["email"] = email
                elif name == "name":
                    values["name"] = TextValidator.require(value, "Name")
                elif name == "address":
                    values["address"] = self._merge_address(user.address, value)
                elif name == "role":
                    values["role"] = Role(value)
                elif name == "is_active":
                    values["is_active"] = bool(value)
                else:
                    values[name] = TextValidator.clean(value)
            self.store.update_user(conn, user_id, values, now)
            if values.get("is_active") is False:
                self.store.delete_user_tokens(conn, user_id)
            user = self.store.get_user(conn, user_id)
        logger.info(f"Updated user {user_id}: {sorted(changes)}")
        return user

    @staticmethod
    def _merge_address(current: Dict[str, Any], changes: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Merge address parts key by key; ``None`` values clear a part."""
        merged = dict(current or {})
        for key, value in (changes or {}).items():
            if key not in ADDRESS_KEYS:
                raise ValidationError("Invalid updates!")
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return merged
