from __future__ import annotations

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TOKEN_HMAC_SECRET = "change-me-in-production"


class Settings(BaseSettings):
    database_url: str

    token_hmac_secret: str = DEFAULT_TOKEN_HMAC_SECRET
    token_hmac_prefix_length: int = 8
    argon2_memory_cost: int = 4096
    argon2_time_cost: int = 3
    argon2_parallelism: int = 1

    email_verification_token_expiry_minutes: int = 24 * 60
    password_reset_token_expiry_minutes: int = 60

    token_migration_batch_size: int = 200
    ops_event_buffer_size: int = 500

    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_seconds: int = 30
    db_echo_sql: bool = False

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("database_url")
    @classmethod
    def validate_database_url(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("DATABASE_URL must be provided")
        return value

    @field_validator("token_hmac_prefix_length")
    @classmethod
    def validate_prefix_length(cls, value: int) -> int:
        # SHA-256 hex digest is 64 characters
        if not 1 <= value <= 64:
            raise ValueError("TOKEN_HMAC_PREFIX_LENGTH must be between 1 and 64")
        return value


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
