import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "30"))

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", secret_key)
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "1440"))  # 1 day
    bcrypt_rounds: int = int(os.getenv("BCRYPT_ROUNDS", "12"))
    # Privileged registration path is disabled unless a code is configured
    admin_registration_code: Optional[str] = os.getenv("ADMIN_REGISTRATION_CODE")
    require_email_verification: bool = _env_bool("REQUIRE_EMAIL_VERIFICATION", "True")

    # Borrowing rules
    borrow_limit: int = int(os.getenv("BOOK_BORROW_LIMIT", "5"))
    borrow_duration_days: int = int(os.getenv("BORROW_DURATION_DAYS", "14"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "1.00"))

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Rate limiting (requests per window, 0 disables)
    api_rate_limit: int = int(os.getenv("API_RATE_LIMIT", "100"))
    api_rate_limit_window: int = int(os.getenv("API_RATE_LIMIT_WINDOW", "900"))  # 15 minutes

    # E-mail settings (nothing sends mail yet)
    smtp_host: str = os.getenv("SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_username: Optional[str] = os.getenv("SMTP_USERNAME")
    smtp_password: Optional[str] = os.getenv("SMTP_PASSWORD")
    smtp_from_email: str = os.getenv("SMTP_FROM_EMAIL", "noreply@library.com")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Management API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
