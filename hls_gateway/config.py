"""Configuration management for the delivery gateway."""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Object storage (R2 / S3-compatible)
    storage_backend: str = "memory"  # "memory" or "r2"
    r2_account_id: str = ""
    r2_access_key_id: str = ""
    r2_secret_access_key: str = ""
    r2_region: str = "auto"
    r2_bucket_name: str = ""
    r2_endpoint: Optional[str] = None  # Defaults to the account's R2 endpoint
    hls_prefix: str = "hls"

    # Signing Configuration
    signed_url_ttl_seconds: int = 14400  # 4 hours
    sign_batch_size: int = 64

    # AirPlay Playback Tokens
    airplay_token_ttl_seconds: int = 14400  # 4 hours

    # Session Credentials
    gallery_password: Optional[str] = None
    auth_secret: Optional[str] = None
    session_max_age_seconds: int = 2592000  # 30 days
    admin_api_key: Optional[str] = None

    # Shared state
    redis_url: Optional[str] = None
    database_url: Optional[str] = None

    # Server Configuration
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"

    # HTTP Client Configuration
    http_timeout_seconds: float = 30.0
    http_max_connections: int = 100
    http_max_keepalive_connections: int = 20

    @property
    def signing_enabled(self) -> bool:
        """Signing needs every R2 credential to be present."""
        return all(
            [
                self.r2_access_key_id,
                self.r2_secret_access_key,
                self.r2_region,
                self.r2_bucket_name,
                self.r2_endpoint or self.r2_account_id,
            ]
        )

    @property
    def resolved_r2_endpoint(self) -> str:
        """Endpoint URL for the bucket (no trailing slash)."""
        if self.r2_endpoint:
            return self.r2_endpoint.rstrip("/")
        return f"https://{self.r2_account_id}.r2.cloudflarestorage.com"


# Global settings instance
settings = Settings()
