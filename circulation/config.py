import os
from dataclasses import dataclass
from decimal import Decimal
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    api_key: str = os.getenv("API_KEY", "patron-client-key")
    staff_api_key: str = os.getenv("STAFF_API_KEY", "staff-secret-key")

    # Database settings
    database_file: str = os.getenv("CIRCULATION_DB_FILE", "circulation.db")
    # Seconds a writer waits for the store's write lock before giving up
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "30"))

    # Circulation defaults, used when a system preference or category value is unset
    default_fine_per_day: Decimal = Decimal(os.getenv("DEFAULT_FINE_PER_DAY", "0.25"))
    default_max_renewals: int = int(os.getenv("DEFAULT_MAX_RENEWALS", "3"))
    default_hold_expiry_days: int = int(os.getenv("DEFAULT_HOLD_EXPIRY_DAYS", "7"))
    default_loan_period_days: int = int(os.getenv("DEFAULT_LOAN_PERIOD_DAYS", "14"))
    default_max_loans: int = int(os.getenv("DEFAULT_MAX_LOANS", "5"))

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Circulation Desk")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "20"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))


settings = Settings()
