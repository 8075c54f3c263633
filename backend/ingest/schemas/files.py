from typing import Any

from pydantic import Field

from ingest.schemas.base import CamelModel


class FileRecord(CamelModel):
    key: str
    name: str
    size: int = Field(ge=0)
    type: str = "application/octet-stream"
    custom_id: str | None = None
    uploaded_at: int | None = None
    file_hash: str | None = None
    acl: str | None = None


class PendingMetadata(CamelModel):
    middleware_metadata: dict[str, Any] = Field(default_factory=dict)
    callback_url: str | None = None
    callback_slug: str | None = None
    await_server_data: bool = False
    is_dev: bool = False
    registered_at: int


class ErrorRecord(CamelModel):
    error: Any = None
    upload_id: str | None = None
    timestamp: int
