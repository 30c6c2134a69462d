"""
Core configuration module with environment-based settings.
"""
import os
from typing import Optional
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    # Application settings
    app_name: str = "WanderChat"
    app_version: str = "1.0.0"
    debug: bool = False
    port: int = 8000

    # Database settings
    database_url_env: Optional[str] = os.getenv("DATABASE_URL")  # Direct DATABASE_URL override
    mysql_host: str = "localhost"
    mysql_port: int = 3306
    mysql_user: str = "root"
    mysql_password: str = ""
    mysql_database: str = "wanderchat"
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_pool_recycle: int = 1800

    @property
    def database_url(self) -> str:
        """Construct MySQL connection URL using mysql-connector-python."""
        # If DATABASE_URL is provided, use it directly
        if self.database_url_env:
            return self.database_url_env

        password_part = f":{self.mysql_password}" if self.mysql_password else ""
        return f"mysql+mysqlconnector://{self.mysql_user}{password_part}@{self.mysql_host}:{self.mysql_port}/{self.mysql_database}?charset=utf8mb4"

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    # Redis settings
    redis_enabled: bool = True
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: Optional[str] = None
    redis_db: int = 0

    @property
    def redis_url(self) -> str:
        """Construct Redis connection URL."""
        auth = f":{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}/{self.redis_db}"

    # JWT settings
    jwt_secret_key: str = "your-secret-key-change-in-production"
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 30

    # Blob store settings (media referenced by messages)
    blob_store_base_url: Optional[str] = None
    blob_store_bucket: str = "wanderchat-media"
    blob_store_token: Optional[str] = None
    blob_store_timeout_seconds: float = 10.0

    # Chat settings
    message_delete_window_hours: int = 24
    chat_page_size: int = 20
    message_page_size: int = 100
    max_page_size: int = 200
    user_search_limit: int = 20

    # CORS settings
    cors_origins: list = [
        "http://localhost:3000",
        "http://localhost:8080",
    ]
    cors_allow_credentials: bool = True
    cors_allow_methods: list = ["*"]
    cors_allow_headers: list = ["*"]

    # Startup settings
    startup_max_retries: int = 30
    startup_retry_delay_seconds: int = 5

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_secret_key(cls, v):
        """Ensure JWT secret key is secure in production."""
        if not v or v == "your-secret-key-change-in-production":
            if os.getenv("ENVIRONMENT") == "production":
                raise ValueError("JWT secret key must be set in production")
        return v

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False
    }


# Global settings instance
settings = Settings()
