"""
Application configuration using pydantic-settings.
Loads from environment variables / .env file.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )
    
    # Application
    app_name: str = "rentflow"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False
    log_level: str = ""
    base_url: str = "http://localhost:8000"
    
    # API Server
    host: str = "0.0.0.0"
    port: int = 8000
    
    # Postgres
    database_url: str = ""
    database_pool_size: int = 5
    database_max_overflow: int = 10
    
    # Redis
    redis_url: str = "redis://localhost:6379/0"
    
    # Admin
    admin_api_key: str = ""
    
    # Jenga (Equity Bank)
    jenga_api_key: str = ""
    jenga_consumer_key: str = ""
    jenga_consumer_secret: str = ""
    jenga_merchant_code: str = ""
    jenga_base_url: str = ""
    jenga_callback_url: str = ""
    jenga_webhook_secret: str = ""
    jenga_timeout: float = 30.0
    
    # Safaricom Daraja (M-Pesa)
    safaricom_consumer_key: str = ""
    safaricom_consumer_secret: str = ""
    safaricom_short_code: str = ""
    safaricom_passkey: str = ""
    safaricom_initiator_name: str = ""
    safaricom_security_credential: str = ""
    safaricom_callback_url: str = ""
    safaricom_webhook_secret: str = ""
    safaricom_timeout: float = 30.0
    
    # COOP Bank
    coop_api_key: str = ""
    coop_merchant_code: str = ""
    coop_base_url: str = ""
    coop_callback_url: str = ""
    coop_webhook_secret: str = ""
    coop_timeout: float = 60.0  # Bulk transfers are slow
    
    # Outbound retry policy
    retry_max_attempts: int = 5
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_backoff_multiplier: float = 2.0
    
    # Batch dispatch
    default_payment_provider: Optional[Literal["jenga", "safaricom", "coop"]] = None
    payment_test_mode: bool = False
    batch_item_delay: float = 0.5
    batch_use_provider_bulk: bool = False
    
    # SMS (Africa's Talking)
    sms_enabled: bool = False
    sms_username: str = ""
    sms_api_key: str = ""
    sms_sender_id: str = "RentFlow"
    
    # Rent collection schedule
    rent_timezone: str = "Africa/Nairobi"
    rent_collection_day: int = 1
    rent_collection_hour: int = 9
    
    @property
    def is_development(self) -> bool:
        return self.app_env == "development"
    
    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
