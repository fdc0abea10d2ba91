import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    token_expiration_minutes: int = int(os.getenv("TOKEN_EXPIRATION_MINUTES", "10080"))  # 7 days
    password_reset_expiration_minutes: int = int(os.getenv("PASSWORD_RESET_EXPIRATION_MINUTES", "60"))
    password_hash_iterations: int = int(os.getenv("PASSWORD_HASH_ITERATIONS", "120000"))
    password_min_length: int = int(os.getenv("PASSWORD_MIN_LENGTH", "6"))

    # Circulation policy
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    renewal_period_days: int = int(os.getenv("RENEWAL_PERIOD_DAYS", "7"))
    max_renewals: int = int(os.getenv("MAX_RENEWALS", "2"))
    reservation_period_days: int = int(os.getenv("RESERVATION_PERIOD_DAYS", "7"))
    fine_rate_per_day: float = float(os.getenv("FINE_RATE_PER_DAY", "1"))

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Email settings
    smtp_host: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: Optional[str] = os.getenv("SMTP_USERNAME")
    smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD")
    smtp_from_email: str = os.getenv("SMTP_FROM_EMAIL", "noreply@library.com")
    smtp_from_name: str = os.getenv("SMTP_FROM_NAME", "Library System")
    smtp_timeout: float = float(os.getenv("SMTP_TIMEOUT", "10"))
    enable_email_notifications: bool = os.getenv("ENABLE_EMAIL_NOTIFICATIONS", "False").lower() in ("true", "1", "yes")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Management API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()


def configure_logging(config: Settings) -> None:
    """Configure root logging once for the API server or the CLI."""
    level = logging.DEBUG if config.debug else getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
