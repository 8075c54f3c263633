from typing import Any, Literal

from pydantic import Field

from ingest.schemas.base import CamelModel


class UploadPutResult(CamelModel):
    url: str
    app_url: str
    ufs_url: str
    file_hash: str
    server_data: Any = None


class CallbackFile(CamelModel):
    key: str
    name: str
    size: int
    type: str
    last_modified: int
    custom_id: str | None = None
    url: str
    app_url: str
    ufs_url: str
    file_hash: str


class CallbackPayload(CamelModel):
    status: Literal["uploaded"] = "uploaded"
    file: CallbackFile
    origin: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class StreamPart(CamelModel):
    payload: str
    signature: str
    hook: Literal["callback", "error"]


class RouteMetadataRequest(CamelModel):
    file_keys: list[str] = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    is_dev: bool = False
    callback_url: str | None = None
    callback_slug: str | None = None
    await_server_data: bool = False


class CallbackResultRequest(CamelModel):
    file_key: str = Field(min_length=1)
    error: Any = None
