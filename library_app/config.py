import logging
import os
from dataclasses import dataclass, field
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "super-secret-key")

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_busy_timeout: float = float(os.getenv("DB_BUSY_TIMEOUT", "30"))  # seconds

    # Circulation settings
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    overdue_sweep_interval: int = int(os.getenv("OVERDUE_SWEEP_INTERVAL", "3600"))  # 0 disables
    fine_daily_rate: float = float(os.getenv("FINE_DAILY_RATE", "0.5"))  # per overdue day, 0 disables

    # Cover storage (S3/MinIO-compatible bucket)
    minio_endpoint: str = os.getenv("MINIO_ENDPOINT", "localhost")
    minio_port: str = os.getenv("MINIO_PORT", "9000")
    minio_bucket: str = os.getenv("MINIO_BUCKET", "book-covers")
    minio_use_ssl: bool = _env_bool("MINIO_USE_SSL", "False")
    cover_storage_timeout: float = float(os.getenv("COVER_STORAGE_TIMEOUT", "10"))
    max_cover_size: int = int(os.getenv("MAX_COVER_SIZE", "5242880"))  # 5MB
    cover_extensions: list = field(default_factory=lambda: ["jpg", "jpeg", "png", "webp"])

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Management System")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG", "False")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Pagination
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


def configure_logging(cfg: "Settings") -> None:
    """Root logging setup for the API and CLI entry points."""
    level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


settings = Settings()
