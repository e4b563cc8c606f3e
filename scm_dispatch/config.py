from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Optional
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./scm_dispatch.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "SCM Dispatch"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Carrier Assignment
    ASSIGNMENT_BATCH_SIZE: int = 3  # Carriers contacted per batch
    MAX_CARRIER_ATTEMPTS: int = 9  # Distinct carriers tried before on_hold
    ASSIGNMENT_EXPIRY_MINUTES: int = 10  # Carrier response window
    BUSY_RETRY_WINDOW_MINUTES: int = 30  # "Recently available" window for busy retries
    BUSY_RETRY_LIMIT: int = 5  # Busy assignments reset per carrier per sweep
    CARRIER_NOTIFY_TIMEOUT_SECONDS: float = 10.0

    # Shipping Quotes
    QUOTE_TIMEOUT_SECONDS: float = 10.0  # Per-carrier quote deadline
    MIN_REQUIRED_QUOTES: int = 2  # Retry failed carriers when fewer accepted
    SHIPPING_LOCK_STALE_MINUTES: int = 5
    QUOTE_IDEMPOTENCY_TTL_MINUTES: int = 60

    # Routing (OSRM)
    OSRM_BASE_URL: str = "http://router.project-osrm.org"
    OSRM_TIMEOUT_SECONDS: float = 5.0
    ROUTE_ROAD_FACTOR: float = 1.25  # Straight-line to road distance buffer
    DEFAULT_DISTANCE_KM: float = 500.0  # Used when coordinates are missing

    # Default pickup warehouse (used when the order's warehouse can't be resolved)
    DEFAULT_WAREHOUSE_NAME: str = "Main Warehouse"
    DEFAULT_WAREHOUSE_ADDRESS: str = "Main Warehouse"
    DEFAULT_WAREHOUSE_CITY: str = "Mumbai"
    DEFAULT_WAREHOUSE_STATE: str = "Maharashtra"
    DEFAULT_WAREHOUSE_POSTAL_CODE: str = "400001"
    DEFAULT_WAREHOUSE_COUNTRY: str = "India"
    DEFAULT_WAREHOUSE_LATITUDE: Optional[float] = 19.0760
    DEFAULT_WAREHOUSE_LONGITUDE: Optional[float] = 72.8777

    # Scheduler
    SCHEDULER_ENABLED: bool = True
    SCHEDULER_TIMEZONE: str = "Asia/Kolkata"
    ASSIGNMENT_RETRY_INTERVAL_MINUTES: int = 5
    SHIPPING_LOCK_SWEEP_INTERVAL_MINUTES: int = 5

    @field_validator(
        'ASSIGNMENT_BATCH_SIZE', 'MAX_CARRIER_ATTEMPTS', 'ASSIGNMENT_EXPIRY_MINUTES',
        'BUSY_RETRY_LIMIT', 'MIN_REQUIRED_QUOTES',
    )
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator('QUOTE_TIMEOUT_SECONDS', 'OSRM_TIMEOUT_SECONDS', 'CARRIER_NOTIFY_TIMEOUT_SECONDS')
    @classmethod
    def timeout_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("timeout must be greater than zero")
        return v

    @field_validator('LOG_LEVEL')
    @classmethod
    def normalize_log_level(cls, v):
        return v.upper()

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
