import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: str = os.getenv("CORS_ORIGINS", "*")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    store_timeout: float = float(os.getenv("STORE_TIMEOUT", "5"))  # seconds
    store_read_retries: int = int(os.getenv("STORE_READ_RETRIES", "3"))
    store_retry_backoff: float = float(os.getenv("STORE_RETRY_BACKOFF", "0.1"))

    # Security settings
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", "change-this-secret-key-in-production")
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "LibraryAPI")
    jwt_audience: str = os.getenv("JWT_AUDIENCE", "LibraryAPIUsers")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "1440"))  # 24 hours

    # Lending settings
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    late_fee_per_day: str = os.getenv("LATE_FEE_PER_DAY", "0.50")
    late_fee_cap: Optional[str] = os.getenv("LATE_FEE_CAP")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    debug: bool = _env_bool("DEBUG")


settings = Settings()
