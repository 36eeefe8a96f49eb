"""
Configuration and settings for the CMS backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    environment: str = Field(default="development", env="ENVIRONMENT")
    server_host: str = Field(default="0.0.0.0", env="SERVER_HOST")
    port: int = Field(default=3001, env="PORT")
    cors_origins: list[str] = Field(
        default=["http://localhost:5173"], env="CORS_ORIGINS"
    )

    # Database (SQLite by default, any SQLAlchemy URL works)
    database_url: str = Field(default="sqlite+pysqlite:///cms.db", env="DATABASE_URL")

    # Sessions
    jwt_secret: str = Field(
        default="your-super-secret-jwt-key-change-in-production", env="JWT_SECRET"
    )
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    session_days: int = Field(default=7, env="SESSION_DAYS")
    cookie_domain: str = Field(default=".llacademy.ng", env="COOKIE_DOMAIN")

    # Google OAuth (code exchange is stubbed)
    google_client_id: Optional[str] = Field(default=None, env="GOOGLE_CLIENT_ID")
    google_client_secret: Optional[str] = Field(
        default=None, env="GOOGLE_CLIENT_SECRET"
    )
    google_redirect_uri: str = Field(
        default="http://localhost:3001/auth/google/callback",
        env="GOOGLE_REDIRECT_URI",
    )
    oauth_stub_email: str = Field(default="user@example.com", env="OAUTH_STUB_EMAIL")
    default_admin_email: str = Field(
        default="admin@llaweb.com", env="DEFAULT_ADMIN_EMAIL"
    )

    # Media
    upload_dir: str = Field(default="uploads", env="UPLOAD_DIR")
    media_domain: str = Field(default="media.llacademy.ng", env="MEDIA_DOMAIN")

    # S3-compatible storage (Cloudflare R2)
    s3_endpoint: Optional[str] = Field(default=None, env="S3_ENDPOINT")
    s3_region: Optional[str] = Field(default="auto", env="S3_REGION")
    s3_bucket: Optional[str] = Field(default=None, env="S3_BUCKET")
    aws_access_key_id: Optional[str] = Field(default=None, env="AWS_ACCESS_KEY_ID")
    aws_secret_access_key: Optional[str] = Field(
        default=None, env="AWS_SECRET_ACCESS_KEY"
    )

    # Blog key-value store (Cloudflare KV in production)
    kv_storage_dir: str = Field(default="kv_storage", env="KV_STORAGE_DIR")
    cloudflare_account_id: Optional[str] = Field(
        default=None, env="CLOUDFLARE_ACCOUNT_ID"
    )
    cloudflare_api_token: Optional[str] = Field(
        default=None, env="CLOUDFLARE_API_TOKEN"
    )
    cloudflare_kv_namespace_id: Optional[str] = Field(
        default=None, env="CLOUDFLARE_KV_NAMESPACE_ID"
    )

    # Backups
    backup_enabled: bool = Field(default=False, env="BACKUP_ENABLED")
    backup_dir: str = Field(default="backups", env="BACKUP_DIR")
    backup_interval_seconds: int = Field(
        default=86400, env="BACKUP_INTERVAL_SECONDS"
    )
    backup_retention_days: int = Field(default=30, env="BACKUP_RETENTION_DAYS")
    local_backup_retention_days: int = Field(
        default=7, env="LOCAL_BACKUP_RETENTION_DAYS"
    )

    # Audit log retention
    audit_retention_days: int = Field(default=90, env="AUDIT_RETENTION_DAYS")
    audit_archive_enabled: bool = Field(default=False, env="AUDIT_ARCHIVE_ENABLED")

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False, env="USE_IN_MEMORY_BACKENDS"
    )

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
