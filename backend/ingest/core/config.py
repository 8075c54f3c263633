from functools import lru_cache
from typing import Literal

from pydantic import Field, HttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        protected_namespaces=(),
    )

    env: Literal["local", "prod", "test"] = Field(default="local", alias="ENV")
    debug: bool = Field(default=True, alias="DEBUG")
    service_name: str = Field(default="ingest gateway", alias="SERVICE_NAME")

    upload_secret: str = Field(default="sk_live_change-me", alias="UPLOAD_SECRET")
    webhook_secret: str | None = Field(default=None, alias="WEBHOOK_SECRET")

    api_base_url: str = Field(default="http://localhost:8000", alias="API_BASE_URL")
    public_url: str | None = Field(default=None, alias="PUBLIC_URL")
    client_base_url: str | None = Field(default=None, alias="CLIENT_BASE_URL")
    ufs_host: str | None = Field(default=None, alias="UFS_HOST")

    db_url: str = Field(
        default="sqlite+aiosqlite:///./ingest.db",
        alias="DATABASE_URL",
    )
    auto_create_schema: bool = Field(default=True, alias="AUTO_CREATE_SCHEMA")

    storage_backend: Literal["s3", "local"] = Field(default="local", alias="STORAGE_BACKEND")
    local_storage_dir: str = Field(default="./data/blobs", alias="LOCAL_STORAGE_DIR")
    s3_endpoint: HttpUrl | None = Field(default=None, alias="S3_ENDPOINT_URL")
    s3_access_key: str = Field(default="change-me", alias="S3_ACCESS_KEY")
    s3_secret_key: str = Field(default="change-me", alias="S3_SECRET_KEY")
    s3_region: str | None = Field(default=None, alias="S3_REGION")
    s3_bucket_uploads: str = Field(default="ingest-uploads", alias="S3_BUCKET_UPLOADS")

    file_record_ttl_seconds: int = Field(default=86400 * 30, alias="FILE_RECORD_TTL_SECONDS")
    pending_metadata_ttl_seconds: int = Field(default=3600, alias="PENDING_METADATA_TTL_SECONDS")
    error_record_ttl_seconds: int = Field(default=86400, alias="ERROR_RECORD_TTL_SECONDS")
    upload_url_ttl_seconds: int = Field(default=3600, alias="UPLOAD_URL_TTL_SECONDS")

    dev_poll_interval_seconds: float = Field(default=1.0, alias="DEV_POLL_INTERVAL_SECONDS")
    dev_poll_timeout_seconds: float = Field(default=300.0, alias="DEV_POLL_TIMEOUT_SECONDS")
    callback_timeout_seconds: float = Field(default=10.0, alias="CALLBACK_TIMEOUT_SECONDS")
    max_parallel_tasks: int = Field(default=64, alias="MAX_PARALLEL_TASKS")
    max_dev_monitors: int = Field(default=16, alias="MAX_DEV_MONITORS")

    app_id: str = Field(default="fkapp", alias="APP_ID")
    default_region: str = Field(default="fukusu-server", alias="DEFAULT_REGION")
    default_acl: str = Field(default="public-read", alias="DEFAULT_ACL")
    allow_acl_override: bool = Field(default=False, alias="ALLOW_ACL_OVERRIDE")

    @property
    def signing_key(self) -> bytes:
        return self.upload_secret.encode("utf-8")

    @property
    def webhook_signing_key(self) -> bytes:
        return (self.webhook_secret or self.upload_secret).encode("utf-8")

    @property
    def file_url_base(self) -> str:
        return (self.public_url or self.api_base_url).rstrip("/")


@lru_cache
def get_settings() -> Settings:
    return Settings()
