from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    database_url: str = "sqlite:///./turnstile.db"
    secret_key: str = "dev-secret-key-change-in-production"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    stripe_secret_key: str = ""
    webhook_secret: str = ""
    webhook_tolerance_seconds: int = 300
    gateway_timeout_seconds: float = 10.0
    currency: str = "inr"

    ticket_code_prefix: str = "GARBA2025"
    code_generation_attempts: int = 10

    processing_fee: float = 40.0
    minimum_refund_amount: float = 1.0
    refund_cutoff_days: int = 10
    stale_refund_minutes: int = 30

    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""

    frontend_url: str = "http://localhost:8000"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "testserver"]
    log_level: str = "INFO"
    rate_limit_enabled: bool = True

    class Config:
        env_file = ".env"
        extra = "ignore"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
