"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: internal_api_key has no default - it MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    app_env: str = "local"
    # CORS: comma-separated (e.g. http://localhost:3000,https://example.com). Empty = default list in code.
    cors_origins: str = ""
    # Trusted proxy IPs (comma-separated). Used for X-Forwarded-For in production.
    trusted_proxy_ips: str = ""

    # ===========================================
    # DATABASE
    # ===========================================
    database_url: str = "sqlite:///./data/orders.db"
    # Retry budget for "database is locked" / busy errors on writes
    db_retry_attempts: int = 3
    db_retry_backoff_seconds: float = 0.1

    # ===========================================
    # REDIS (rate limiting)
    # ===========================================
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_enabled: bool = True
    rate_limit_window_seconds: int = 60
    verify_rate_limit_requests: int = 10
    api_rate_limit_requests: int = 30

    # ===========================================
    # INTERNAL / ADMIN API
    # ===========================================
    internal_api_key: str  # Required, no default
    admin_api_key: str | None = None  # Optional, but recommended

    # ===========================================
    # SESSIONS
    # ===========================================
    session_max_age_seconds: int = 7200  # 2 hours, never extended by access
    session_sweep_interval_seconds: int = 300  # 5 min

    # ===========================================
    # ORDER POLICY
    # ===========================================
    access_window_hours: int = 24  # single-use order grace period
    max_devices_per_order: int = 3

    # ===========================================
    # DEVICE IDENTITY
    # ===========================================
    device_cookie_name: str = "device_id"
    device_cookie_max_age_days: int = 365
    device_binding_retention_days: int = 365

    # ===========================================
    # LOGGING
    # ===========================================
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("internal_api_key")
    @classmethod
    def validate_internal_api_key(cls, v: str) -> str:
        """Refuse the placeholder keys shipped in examples."""
        if len(v) < 16:
            raise ValueError("internal_api_key must be at least 16 characters")
        if v in ("internal-api-key-change-in-production", "changeme", "secret"):
            raise ValueError("internal_api_key is too weak, please change it")
        return v

    @field_validator("max_devices_per_order", "session_max_age_seconds", "access_window_hours")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @property
    def trusted_proxy_ips_set(self) -> set[str]:
        """Get trusted proxy IPs as a set."""
        return {ip.strip() for ip in self.trusted_proxy_ips.split(",") if ip.strip()}

    @property
    def cors_origins_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
