import re
from typing import Optional

from .errors import ValidationError

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")


class ISBNValidator:
    """ISBN-10 / ISBN-13 normalization and checksum validation."""

    @staticmethod
    def normalize_isbn(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"[^0-9Xx]", "", raw).upper()

    @staticmethod
    def is_valid_isbn(isbn: Optional[str]) -> bool:
        s = ISBNValidator.normalize_isbn(isbn)
        if len(s) == 10:
            if not s[:9].isdigit() or not (s[9].isdigit() or s[9] == "X"):
                return False
            check = 10 if s[9] == "X" else int(s[9])
            total = sum((i + 1) * int(ch) for i, ch in enumerate(s[:9])) + 10 * check
            return total % 11 == 0
        if len(s) == 13 and s.isdigit():
            total = sum(int(ch) * (1 if i % 2 == 0 else 3) for i, ch in enumerate(s[:12]))
            return (10 - total % 10) % 10 == int(s[12])
        return False


class EmailValidator:
    @staticmethod
    def normalize_email(raw: Optional[str]) -> str:
        return (raw or "").strip().lower()

    @staticmethod
    def is_valid_email(email: Optional[str]) -> bool:
        return bool(email) and _EMAIL_PATTERN.match(email) is not None


class TextValidator:
    """Whitespace cleanup for free-text catalog and profile fields."""

    @staticmethod
    def clean(text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        cleaned = re.sub(r"\s+", " ", text).strip()
        return cleaned or None

    @staticmethod
    def require(text: Optional[str], field_name: str) -> str:
        cleaned = TextValidator.clean(text)
        if not cleaned:
            raise ValidationError(f"{field_name} is required")
        return cleaned


def validate_password(password: Optional[str], min_length: int) -> str:
    if password is None or len(password.strip()) < min_length:
        raise ValidationError(f"Password must be at least {min_length} characters")
    return password.strip()
