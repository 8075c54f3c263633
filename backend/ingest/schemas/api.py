from typing import Any

from pydantic import Field

from ingest.schemas.base import CamelModel


class AppInfo(CamelModel):
    app_id: str
    default_acl: str = Field(serialization_alias="defaultACL")
    allow_acl_override: bool = Field(serialization_alias="allowACLOverride")


class PrepareUploadRequest(CamelModel):
    file_name: str = Field(min_length=1)
    file_size: int = Field(ge=0)
    file_type: str | None = None
    acl: str | None = None
    content_disposition: str | None = None
    custom_id: str | None = None
    expires_in: int | None = Field(default=None, gt=0)


class PrepareUploadResponse(CamelModel):
    key: str
    url: str


class UploadFileInfo(CamelModel):
    name: str = Field(min_length=1)
    size: int = Field(ge=0)
    type: str = "application/octet-stream"
    custom_id: str | None = None


class UploadFilesRequest(CamelModel):
    files: list[UploadFileInfo]
    acl: str = "private"
    content_disposition: str = "inline"


class PresignedFile(CamelModel):
    key: str
    file_name: str
    file_type: str
    file_url: str
    url: str
    custom_id: str | None = None
    content_disposition: str
    polling_jwt: str = "not-implemented"
    polling_url: str
    fields: dict[str, str] = Field(default_factory=dict)


class UploadFilesResponse(CamelModel):
    data: list[PresignedFile]


class DeleteFilesRequest(CamelModel):
    file_keys: list[str] | None = None
    custom_ids: list[str] | None = None


class DeleteFilesResponse(CamelModel):
    success: bool = True
    deleted_count: int


class ListFilesRequest(CamelModel):
    limit: int = Field(default=20, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class ListedFile(CamelModel):
    id: str
    custom_id: str | None = None
    key: str
    name: str
    size: int
    status: str = "Uploaded"
    uploaded_at: int | None = None


class ListFilesResponse(CamelModel):
    has_more: bool
    files: list[ListedFile]


class UsageInfo(CamelModel):
    total_bytes: int
    app_total_bytes: int
    files_uploaded: int
    limit_bytes: int = -1


class FileAccessRequest(CamelModel):
    file_key: str | None = None
    custom_id: str | None = None


class FileAccessResponse(CamelModel):
    url: str
    ufs_url: str


class PolledFile(CamelModel):
    file_key: str
    file_name: str
    file_size: int
    file_type: str
    file_url: str
    custom_id: str | None = None


class PollUploadResponse(CamelModel):
    status: str
    file: PolledFile | None = None
    metadata: Any = None
    callback_data: Any = None


class RenameUpdate(CamelModel):
    file_key: str | None = None
    custom_id: str | None = None
    new_name: str | None = None


class RenameFilesRequest(CamelModel):
    updates: list[RenameUpdate]


class RenameFilesResponse(CamelModel):
    success: bool = True
    renamed_count: int


class AclUpdate(CamelModel):
    file_key: str | None = None
    custom_id: str | None = None
    acl: str | None = None


class UpdateAclRequest(CamelModel):
    updates: list[AclUpdate]


class UpdateAclResponse(CamelModel):
    success: bool = True
    updated_count: int


class CompleteMultipartRequest(CamelModel):
    file_key: str = Field(min_length=1)


class FailureCallbackRequest(CamelModel):
    file_key: str = Field(min_length=1)
    upload_id: str | None = None


class SuccessResponse(CamelModel):
    success: bool = True
